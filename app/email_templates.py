"""
MJML Email Templates
Booking notifications for customers and providers
"""

from html import escape
from typing import Optional

from .config import FRONTEND_URL

THEME = {
    "primary": "#4f46e5",
    "primary_dark": "#4338ca",
    "background": "#f8fafc",
    "text_primary": "#0f172a",
    "text_secondary": "#334155",
    "text_muted": "#64748b",
    "border": "#e2e8f0",
    "success": "#16a34a",
    "warning": "#f59e0b",
    "danger": "#ef4444",
}

DASHBOARD_URL = f"{FRONTEND_URL}/provider/bookings"


def get_base_template(
    title: str,
    preview_text: str,
    content_sections: str,
    cta_url: Optional[str] = None,
    cta_label: Optional[str] = None,
) -> str:
    """Base MJML template wrapper for all emails"""

    cta_section = ""
    if cta_url and cta_label:
        cta_section = f"""
        <mj-section padding="20px 0">
          <mj-column>
            <mj-button
              href="{cta_url}"
              background-color="{THEME['primary']}"
              color="#ffffff"
              font-weight="600"
              border-radius="8px"
              padding="18px 40px"
              font-size="16px">
              {cta_label}
            </mj-button>
          </mj-column>
        </mj-section>
        """

    return f"""
    <mjml>
      <mj-head>
        <mj-title>{title}</mj-title>
        <mj-preview>{preview_text}</mj-preview>
        <mj-attributes>
          <mj-all font-family="-apple-system, BlinkMacSystemFont, 'Segoe UI', 'Helvetica Neue', Arial, sans-serif" />
          <mj-text font-size="16px" line-height="1.6" color="{THEME['text_secondary']}" />
        </mj-attributes>
      </mj-head>
      <mj-body background-color="{THEME['background']}">
        <mj-section background-color="#ffffff" padding="40px 40px 48px 40px">
          <mj-column>
            <mj-text font-size="24px" font-weight="600" color="{THEME['text_primary']}" line-height="1.3" padding="0 0 16px 0">
              {title}
            </mj-text>

            {content_sections}
          </mj-column>
        </mj-section>

        {cta_section}

        <mj-section padding="32px 20px">
          <mj-column>
            <mj-text align="center" font-size="13px" color="#94a3b8" padding="0">
              Sent by Zone Meet on behalf of your appointment provider.
            </mj-text>
          </mj-column>
        </mj-section>
      </mj-body>
    </mjml>
    """


def _appointment_block(scheduled_date: str, scheduled_time: str, location: Optional[str] = None) -> str:
    location_line = ""
    if location:
        location_line = f"""
    <mj-text font-size="15px" color="{THEME['text_primary']}" padding="0">
      📍 {escape(location)}
    </mj-text>"""
    return f"""
    <mj-text font-size="15px" color="{THEME['text_primary']}" padding="20px 0 0 0">
      📅 {scheduled_date}
    </mj-text>
    <mj-text font-size="15px" color="{THEME['text_primary']}" padding="0">
      ⏰ {scheduled_time}
    </mj-text>{location_line}
    """


def _manage_links(cancel_url: Optional[str], reschedule_url: Optional[str]) -> str:
    links = []
    if reschedule_url:
        links.append(f'<a href="{reschedule_url}" style="color: {THEME["primary"]};">Reschedule</a>')
    if cancel_url:
        links.append(f'<a href="{cancel_url}" style="color: {THEME["danger"]};">Cancel</a>')
    if not links:
        return ""
    return f"""
    <mj-text font-size="14px" color="{THEME['text_muted']}" padding="24px 0 0 0">
      Need to change something? {" · ".join(links)}
    </mj-text>
    """


def booking_received_customer_template(
    customer_name: str,
    provider_name: str,
    scheduled_date: str,
    scheduled_time: str,
    location: Optional[str] = None,
    confirm_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
    reschedule_url: Optional[str] = None,
) -> str:
    """Customer copy of a new (pending) booking request"""
    content = f"""
    <mj-text>
      Hi {escape(customer_name)},
    </mj-text>

    <mj-text>
      Your appointment request with <strong>{escape(provider_name)}</strong> has been received
      and is waiting for confirmation.
    </mj-text>
    {_appointment_block(scheduled_date, scheduled_time, location)}
    {_manage_links(cancel_url, reschedule_url)}
    """

    return get_base_template(
        title="Appointment Request Received",
        preview_text=f"Your request with {provider_name}",
        content_sections=content,
        cta_url=confirm_url,
        cta_label="Confirm Appointment" if confirm_url else None,
    )


def new_booking_request_provider_template(
    provider_name: str,
    customer_name: str,
    customer_email: str,
    customer_phone: Optional[str],
    scheduled_date: str,
    scheduled_time: str,
    duration_minutes: int,
    notes: Optional[str] = None,
) -> str:
    """New booking notification for the provider"""
    notes_section = ""
    if notes:
        notes_section = f"""
        <mj-text font-size="14px" color="{THEME['text_muted']}" padding="16px 0 0 0">
          <strong>Notes:</strong><br/>
          {escape(notes)}
        </mj-text>
        """

    content = f"""
    <mj-text>
      Hi {escape(provider_name)},
    </mj-text>

    <mj-text>
      <strong>{escape(customer_name)}</strong> booked an appointment with you.
    </mj-text>
    {_appointment_block(scheduled_date, scheduled_time)}
    <mj-text font-size="13px" color="{THEME['text_muted']}" padding="0 0 8px 0">
      Duration: {duration_minutes} minutes
    </mj-text>

    <mj-text color="{THEME['text_muted']}" font-size="13px" padding="12px 0 0 0">
      Email: {escape(customer_email)}<br/>
      {f"Phone: {escape(customer_phone)}" if customer_phone else ""}
    </mj-text>

    {notes_section}

    <mj-text color="#92400e" font-size="14px" padding="20px 0">
      ⏰ <strong>Action Required:</strong> Please confirm or decline this booking in your dashboard.
    </mj-text>
    """

    return get_base_template(
        title="New Booking Request 📅",
        preview_text=f"New booking from {customer_name}",
        content_sections=content,
        cta_url=DASHBOARD_URL,
        cta_label="Review Booking",
    )


def booking_confirmed_customer_template(
    customer_name: str,
    provider_name: str,
    scheduled_date: str,
    scheduled_time: str,
    location: Optional[str] = None,
    cancel_url: Optional[str] = None,
    reschedule_url: Optional[str] = None,
) -> str:
    content = f"""
    <mj-text>
      Hi {escape(customer_name)},
    </mj-text>

    <mj-text>
      Great news! Your appointment with <strong>{escape(provider_name)}</strong> is confirmed.
    </mj-text>

    <mj-text align="center" font-size="18px" font-weight="600" color="{THEME['success']}" padding="20px 0 0 0">
      ✓ Confirmed
    </mj-text>
    {_appointment_block(scheduled_date, scheduled_time, location)}
    {_manage_links(cancel_url, reschedule_url)}
    """

    return get_base_template(
        title="Your Appointment is Confirmed! 🎉",
        preview_text=f"Confirmed with {provider_name}",
        content_sections=content,
    )


def booking_cancelled_template(
    recipient_name: str,
    other_party_name: str,
    scheduled_date: str,
    scheduled_time: str,
    reason: Optional[str] = None,
    cancelled_by_customer: bool = False,
) -> str:
    """Cancellation notice; the recipient is whoever did not cancel"""
    who = "cancelled their appointment" if cancelled_by_customer else "cancelled your appointment"
    reason_section = ""
    if reason:
        reason_section = f"""
        <mj-text font-size="14px" color="{THEME['text_muted']}" padding="16px 0 0 0">
          <strong>Reason:</strong> {escape(reason)}
        </mj-text>
        """

    content = f"""
    <mj-text>
      Hi {escape(recipient_name)},
    </mj-text>

    <mj-text>
      <strong>{escape(other_party_name)}</strong> {who}.
    </mj-text>
    {_appointment_block(scheduled_date, scheduled_time)}
    {reason_section}
    """

    return get_base_template(
        title="Appointment Cancelled",
        preview_text=f"Appointment on {scheduled_date} cancelled",
        content_sections=content,
        cta_url=DASHBOARD_URL if cancelled_by_customer else None,
        cta_label="View Bookings" if cancelled_by_customer else None,
    )


def booking_rescheduled_template(
    recipient_name: str,
    other_party_name: str,
    old_date: str,
    old_time: str,
    scheduled_date: str,
    scheduled_time: str,
    reason: Optional[str] = None,
    confirm_url: Optional[str] = None,
) -> str:
    reason_section = ""
    if reason:
        reason_section = f"""
        <mj-text font-size="14px" color="{THEME['text_muted']}" padding="16px 0 0 0">
          <strong>Reason:</strong> {escape(reason)}
        </mj-text>
        """

    content = f"""
    <mj-text>
      Hi {escape(recipient_name)},
    </mj-text>

    <mj-text>
      <strong>{escape(other_party_name)}</strong> moved your appointment. It needs to be confirmed again.
    </mj-text>

    <mj-text font-size="14px" color="{THEME['text_muted']}" padding="16px 0 0 0">
      <s>{old_date} {old_time}</s>
    </mj-text>
    {_appointment_block(scheduled_date, scheduled_time)}
    {reason_section}
    """

    return get_base_template(
        title="Appointment Rescheduled",
        preview_text=f"New time: {scheduled_date} {scheduled_time}",
        content_sections=content,
        cta_url=confirm_url or DASHBOARD_URL,
        cta_label="Confirm New Time" if confirm_url else "Review Booking",
    )
