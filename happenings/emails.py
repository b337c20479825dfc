"""Plain-text email rendering and SMTP delivery."""

from __future__ import annotations

import logging
import smtplib
from email.mime.text import MIMEText
from email.utils import parseaddr

from jinja2 import DictLoader, Environment, StrictUndefined

from .config import settings

logger = logging.getLogger("uvicorn.error")

TEMPLATES: dict[str, str] = {
    "verification_code.subject": "Your code for {{ event_title }}",
    "verification_code.txt": """Hi {{ guest_name }},

Your verification code is: {{ code }}

Enter it to finish {{ purpose }} for {{ event_title }} on {{ date_label }}.
The code expires in {{ expires_minutes }} minutes. If you did not request it,
you can ignore this email.
""",
    "rsvp_confirmation.subject": "{% if status == 'waitlist' %}You're on the waitlist{% else %}You're going{% endif %}: {{ event_title }}",
    "rsvp_confirmation.txt": """Hi {{ name }},

{% if status == 'waitlist' -%}
{{ event_title }} on {{ date_label }} is full, so you are #{{ position }} on the waitlist.
We'll email you if a spot opens up.
{%- else -%}
You're confirmed for {{ event_title }} on {{ date_label }}{% if start_label %} at {{ start_label }}{% endif %}.
{%- endif %}
{% if venue %}
Where: {{ venue }}
{% endif %}
{% if cancel_url %}
Can't make it? Cancel here: {{ cancel_url }}
{% endif %}
""",
    "waitlist_offer.subject": "A spot opened up: {{ event_title }}",
    "waitlist_offer.txt": """Hi {{ name }},

A spot opened up for {{ what }} at {{ event_title }} on {{ date_label }}.
The offer expires {{ expires_label }}; after that it goes to the next person in line.
{% if confirm_url %}
Claim it here: {{ confirm_url }}
{% else %}
Confirm it from the event page to keep your spot.
{% endif %}
""",
    "claim_confirmation.subject": "{% if status == 'waitlist' %}You're on the waitlist{% else %}Your slot is booked{% endif %}: {{ event_title }}",
    "claim_confirmation.txt": """Hi {{ name }},

{% if status == 'waitlist' -%}
Slot {{ slot_number }} for {{ event_title }} on {{ date_label }} is taken; you are #{{ position }} on its waitlist.
{%- else -%}
You have slot {{ slot_number }} for {{ event_title }} on {{ date_label }}{% if start_label %}, starting around {{ start_label }}{% endif %}.
{%- endif %}
{% if cancel_url %}
Need to drop out? Release your slot here: {{ cancel_url }}
{% endif %}
""",
    "host_signup.subject": "New signup for {{ event_title }}",
    "host_signup.txt": """{{ name }} {{ verb }} {{ event_title }} on {{ date_label }}.

Confirmed: {{ confirmed }}{% if capacity %} of {{ capacity }}{% endif %}
Waitlist: {{ waitlist }}
""",
    "cohost_invite.subject": "{{ inviter }} invited you to co-host {{ event_title }}",
    "cohost_invite.txt": """Hi {{ name }},

{{ inviter }} invited you to co-host {{ event_title }}.
Accept or decline the invitation from your Happenings account.
""",
    "attendee_invite.subject": "You're invited: {{ event_title }}",
    "attendee_invite.txt": """Hi,

{{ inviter }} invited you to {{ event_title }}.
{% if accept_url %}
Accept the invitation here: {{ accept_url }}
{% else %}
Accept the invitation from your Happenings account.
{% endif %}
This invitation expires {{ expires_label }}.
""",
}

_env = Environment(
    loader=DictLoader(TEMPLATES),
    undefined=StrictUndefined,
    keep_trailing_newline=True,
    autoescape=False,
)


def render(template: str, **context) -> tuple[str, str]:
    """Return ``(subject, body)`` for a named template."""
    subject = _env.get_template(f"{template}.subject").render(**context).strip()
    body = _env.get_template(f"{template}.txt").render(**context)
    return subject, body


def send_email(to_email: str, subject: str, body: str) -> bool:
    """Deliver a plain-text email; returns ``False`` when it was not sent."""
    if not settings.smtp_configured:
        logger.info("SMTP not configured; would have sent %r to %s", subject, to_email)
        return False

    sender = parseaddr(settings.mail_from)[1] or settings.mail_from
    message = MIMEText(body, "plain", "utf-8")
    message["Subject"] = subject
    message["From"] = settings.mail_from
    message["To"] = to_email

    try:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=30) as server:
            if settings.smtp_username:
                server.starttls()
                server.login(settings.smtp_username, settings.smtp_password)
            server.sendmail(sender, [to_email], message.as_string())
    except (smtplib.SMTPException, OSError) as exc:
        logger.warning("Failed to send %r to %s: %s", subject, to_email, exc)
        return False
    logger.info("Sent %r to %s", subject, to_email)
    return True


def send_template(to_email: str | None, template: str, **context) -> bool:
    if not to_email:
        return False
    subject, body = render(template, **context)
    return send_email(to_email, subject, body)
