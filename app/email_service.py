"""
Email Service using Resend
Booking notifications rendered from MJML templates
"""

import logging
from typing import Optional, Union

import resend
from mjml import mjml_to_html

from .config import EMAIL_FROM_ADDRESS, RESEND_API_KEY
from .email_templates import (
    booking_cancelled_template,
    booking_confirmed_customer_template,
    booking_received_customer_template,
    booking_rescheduled_template,
    new_booking_request_provider_template,
)

logger = logging.getLogger(__name__)

resend.api_key = RESEND_API_KEY


class EmailDeliveryError(Exception):
    """Raised when a notification could not be handed to Resend"""


def compile_mjml_to_html(mjml_content: str) -> str:
    """Compile MJML template to production-ready HTML"""
    try:
        result = mjml_to_html(mjml_content)
    except Exception as e:
        logger.error(f"MJML compilation error: {e}")
        raise EmailDeliveryError(f"Failed to compile MJML template: {str(e)}") from e

    # Older mjml releases return a dict, newer ones an object with .html/.errors
    if isinstance(result, dict):
        errors, html = result.get("errors"), result.get("html", "")
    else:
        errors, html = getattr(result, "errors", None), getattr(result, "html", str(result))
    if errors:
        logger.warning(f"MJML compilation warnings: {errors}")
    return html


async def send_email(
    to: Union[str, list[str]],
    subject: str,
    mjml_content: str,
    from_address: Optional[str] = None,
) -> dict:
    """
    Send an email through Resend

    Args:
        to: Recipient email(s)
        subject: Email subject line
        mjml_content: MJML template content (will be compiled to HTML)
        from_address: Optional custom from address

    Returns:
        Send response dict
    """
    if not RESEND_API_KEY:
        logger.error("❌ No email service configured - RESEND_API_KEY missing")
        raise EmailDeliveryError("Email service not configured")

    html_content = compile_mjml_to_html(mjml_content)
    recipients = [to] if isinstance(to, str) else to

    try:
        logger.info(f"📧 Sending email via Resend to: {recipients}")
        response = resend.Emails.send(
            {
                "from": from_address or EMAIL_FROM_ADDRESS,
                "to": recipients,
                "subject": subject,
                "html": html_content,
            }
        )
        logger.info(f"✅ Email sent successfully via Resend: {response}")
        return response
    except Exception as e:
        logger.error(f"❌ Email send error to {recipients}: {e}")
        raise EmailDeliveryError(f"Failed to send email: {str(e)}") from e


# ============================================
# Booking notifications
# ============================================


async def send_booking_received_to_customer(
    customer_email: str,
    customer_name: str,
    provider_name: str,
    scheduled_date: str,
    scheduled_time: str,
    location: Optional[str] = None,
    confirm_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
    reschedule_url: Optional[str] = None,
) -> dict:
    mjml_content = booking_received_customer_template(
        customer_name=customer_name,
        provider_name=provider_name,
        scheduled_date=scheduled_date,
        scheduled_time=scheduled_time,
        location=location,
        confirm_url=confirm_url,
        cancel_url=cancel_url,
        reschedule_url=reschedule_url,
    )
    return await send_email(
        to=customer_email,
        subject=f"Appointment request received - {provider_name}",
        mjml_content=mjml_content,
    )


async def send_new_booking_to_provider(
    provider_email: str,
    provider_name: str,
    customer_name: str,
    customer_email: str,
    customer_phone: Optional[str],
    scheduled_date: str,
    scheduled_time: str,
    duration_minutes: int,
    notes: Optional[str] = None,
) -> dict:
    """Notify provider about a pending booking that requires confirmation"""
    mjml_content = new_booking_request_provider_template(
        provider_name=provider_name,
        customer_name=customer_name,
        customer_email=customer_email,
        customer_phone=customer_phone,
        scheduled_date=scheduled_date,
        scheduled_time=scheduled_time,
        duration_minutes=duration_minutes,
        notes=notes,
    )
    return await send_email(
        to=provider_email,
        subject=f"New Booking Request: {customer_name} - {scheduled_date}",
        mjml_content=mjml_content,
    )


async def send_booking_confirmed_to_customer(
    customer_email: str,
    customer_name: str,
    provider_name: str,
    scheduled_date: str,
    scheduled_time: str,
    location: Optional[str] = None,
    cancel_url: Optional[str] = None,
    reschedule_url: Optional[str] = None,
) -> dict:
    mjml_content = booking_confirmed_customer_template(
        customer_name=customer_name,
        provider_name=provider_name,
        scheduled_date=scheduled_date,
        scheduled_time=scheduled_time,
        location=location,
        cancel_url=cancel_url,
        reschedule_url=reschedule_url,
    )
    return await send_email(
        to=customer_email,
        subject=f"Your appointment is confirmed - {provider_name}",
        mjml_content=mjml_content,
    )


async def send_booking_cancelled(
    to: str,
    recipient_name: str,
    other_party_name: str,
    scheduled_date: str,
    scheduled_time: str,
    reason: Optional[str] = None,
    cancelled_by_customer: bool = False,
) -> dict:
    mjml_content = booking_cancelled_template(
        recipient_name=recipient_name,
        other_party_name=other_party_name,
        scheduled_date=scheduled_date,
        scheduled_time=scheduled_time,
        reason=reason,
        cancelled_by_customer=cancelled_by_customer,
    )
    return await send_email(
        to=to,
        subject=f"Appointment cancelled - {scheduled_date}",
        mjml_content=mjml_content,
    )


async def send_booking_rescheduled(
    to: str,
    recipient_name: str,
    other_party_name: str,
    old_date: str,
    old_time: str,
    scheduled_date: str,
    scheduled_time: str,
    reason: Optional[str] = None,
    confirm_url: Optional[str] = None,
) -> dict:
    mjml_content = booking_rescheduled_template(
        recipient_name=recipient_name,
        other_party_name=other_party_name,
        old_date=old_date,
        old_time=old_time,
        scheduled_date=scheduled_date,
        scheduled_time=scheduled_time,
        reason=reason,
        confirm_url=confirm_url,
    )
    return await send_email(
        to=to,
        subject=f"Appointment rescheduled to {scheduled_date}",
        mjml_content=mjml_content,
    )
