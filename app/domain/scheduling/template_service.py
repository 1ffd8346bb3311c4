"""Template service - Weekly recurring availability per provider"""

import logging

from fastapi import HTTPException
from sqlalchemy.orm import Session

from ...models import AvailabilityTemplate, Provider, TemplateTimeSlot
from .repository import SchedulingRepository
from .schemas import TemplateCreate, TemplateUpdate, TimeSlotInput
from .time_calculator import resolve_zone

logger = logging.getLogger(__name__)


def template_to_dict(template: AvailabilityTemplate) -> dict:
    return {
        "id": template.id,
        "name": template.name,
        "description": template.description,
        "timezone": template.timezone,
        "isDefault": template.is_default,
        "isActive": template.is_active,
        "timeSlots": [
            {
                "id": s.id,
                "dayOfWeek": s.day_of_week,
                "startTime": s.start_time,
                "endTime": s.end_time,
                "isEnabled": s.is_enabled,
            }
            for s in sorted(template.time_slots, key=lambda s: (s.day_of_week, s.start_time))
        ],
        "createdAt": template.created_at,
        "updatedAt": template.updated_at,
    }


class TemplateService:
    """Service layer for availability templates"""

    def __init__(self, db: Session):
        self.db = db
        self.repo = SchedulingRepository()

    def get_templates(self, provider: Provider) -> list[AvailabilityTemplate]:
        return self.repo.get_templates(self.db, provider.id)

    def get_template(self, template_id: int, provider: Provider) -> AvailabilityTemplate:
        template = self.repo.get_template(self.db, template_id, provider.id)
        if not template:
            raise HTTPException(status_code=404, detail="Template not found")
        return template

    @staticmethod
    def _build_slots(slots: list[TimeSlotInput]) -> list[TemplateTimeSlot]:
        built = []
        for slot in slots:
            if slot.startTime >= slot.endTime:
                raise HTTPException(
                    status_code=400,
                    detail=f"Start time must be before end time ({slot.startTime}-{slot.endTime})",
                )
            built.append(
                TemplateTimeSlot(
                    day_of_week=slot.dayOfWeek,
                    start_time=slot.startTime,
                    end_time=slot.endTime,
                    is_enabled=slot.isEnabled,
                )
            )
        return built

    def create_template(self, data: TemplateCreate, provider: Provider) -> AvailabilityTemplate:
        logger.info(f"📥 Creating availability template '{data.name}' for provider {provider.id}")
        # First template becomes the default automatically
        is_default = data.isDefault or not self.repo.get_templates(self.db, provider.id)
        if is_default:
            self.repo.unset_default_templates(self.db, provider.id)

        template = AvailabilityTemplate(
            provider_id=provider.id,
            name=data.name,
            description=data.description,
            timezone=resolve_zone(data.timezone).key,
            is_default=is_default,
            is_active=data.isActive,
        )
        template.time_slots = self._build_slots(data.timeSlots)
        self.db.add(template)
        self.db.commit()
        self.db.refresh(template)
        logger.info(f"✅ Template {template.id} created (default={template.is_default})")
        return template

    def update_template(
        self, template_id: int, data: TemplateUpdate, provider: Provider
    ) -> AvailabilityTemplate:
        template = self.get_template(template_id, provider)
        fields = data.model_dump(exclude_unset=True)

        if fields.get("name"):
            template.name = fields["name"]
        if "description" in fields:
            template.description = fields["description"]
        if fields.get("timezone"):
            template.timezone = resolve_zone(fields["timezone"]).key
        if fields.get("isActive") is not None:
            template.is_active = fields["isActive"]
        if fields.get("isDefault") is True:
            self.repo.unset_default_templates(self.db, provider.id, keep_id=template.id)
            template.is_default = True
        elif fields.get("isDefault") is False and template.is_default:
            raise HTTPException(
                status_code=400,
                detail="Mark another template as default instead of unsetting the default",
            )
        if data.timeSlots is not None:
            template.time_slots = self._build_slots(data.timeSlots)

        self.db.commit()
        self.db.refresh(template)
        logger.info(f"✅ Template {template.id} updated")
        return template

    def delete_template(self, template_id: int, provider: Provider) -> dict:
        template = self.get_template(template_id, provider)
        if template.is_default:
            raise HTTPException(status_code=400, detail="Cannot delete the default template")
        self.db.delete(template)
        self.db.commit()
        logger.info(f"🗑️ Template {template_id} deleted")
        return {"success": True, "message": "Template deleted"}
