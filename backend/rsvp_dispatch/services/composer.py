"""Message composer - renders a template for one guest into a channel-ready message.

Composition is pure: templates are loaded up front (see build_template_catalog)
and compose() never touches the database or the network.
"""
import re
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone, tzinfo
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from sqlalchemy.orm import Session

from rsvp_dispatch.core.config import settings
from rsvp_dispatch.models.bulk_job import MessageFormat, MessageKind
from rsvp_dispatch.models.message_template import MessageTemplate
from rsvp_dispatch.utils.time import as_utc

logger = logging.getLogger(__name__)

# {{name}} is required, {{name?}} renders empty when the value is missing
PLACEHOLDER_RE = re.compile(r"\{\{\s*(\w+)(\?)?\s*\}\}")

DEFAULT_LOCALE = "he"
SUPPORTED_LOCALES = ("he", "en")


class ComposeError(Exception):
    """Raised when a message cannot be rendered"""
    TEMPLATE_NOT_FOUND = "TEMPLATE_NOT_FOUND"
    MISSING_REQUIRED_FIELD = "MISSING_REQUIRED_FIELD"

    def __init__(self, code: str, detail: str):
        super().__init__(f"{code}: {detail}")
        self.code = code
        self.detail = detail


@dataclass(frozen=True)
class TemplateDefinition:
    id: str
    message_kind: str
    locale: str
    body: str
    buttons: Tuple[str, ...] = ()
    content_sid: Optional[str] = None


@dataclass(frozen=True)
class RenderedMessage:
    """Channel-ready message; senders map it onto their provider payload"""
    body: str
    shape: str = MessageFormat.PLAIN
    buttons: Tuple[str, ...] = ()
    media_url: Optional[str] = None
    content_sid: Optional[str] = None
    content_variables: Dict[str, str] = field(default_factory=dict)


DEFAULT_BODIES = {
    "he": {
        MessageKind.INVITE: (
            "שלום {{guestName}}!\n\n"
            "אתם מוזמנים ל{{eventTitle}}!\n\n"
            "נשמח מאוד אם תאשרו את הגעתכם בקישור הבא:\n{{rsvpLink}}\n\n"
            "מחכים לראותכם!"
        ),
        MessageKind.REMINDER: (
            "שלום {{guestName}}!\n\n"
            "רצינו להזכיר לכם לאשר את הגעתכם ל{{eventTitle}}.\n\n"
            "לאישור הגעה:\n{{rsvpLink}}\n\n"
            "תודה!"
        ),
        MessageKind.EVENT_DAY: (
            "שלום {{guestName}}!\n\n"
            "היום זה קורה! {{eventTitle}} בשעה {{eventTime}} ב{{eventVenue}}.\n"
            "{{tableName?}}\n\n"
            "מחכים לראותכם!"
        ),
        MessageKind.THANK_YOU: (
            "שלום {{guestName}}!\n\n"
            "תודה שחגגתם איתנו ב{{eventTitle}}!"
        ),
    },
    "en": {
        MessageKind.INVITE: (
            "Hello {{guestName}}!\n\n"
            "You are invited to {{eventTitle}}!\n\n"
            "Please confirm your attendance using the link below:\n{{rsvpLink}}\n\n"
            "We look forward to seeing you!"
        ),
        MessageKind.REMINDER: (
            "Hello {{guestName}}!\n\n"
            "This is a reminder to confirm your attendance at {{eventTitle}}.\n\n"
            "Please RSVP here:\n{{rsvpLink}}\n\n"
            "Thank you!"
        ),
        MessageKind.EVENT_DAY: (
            "Hello {{guestName}}!\n\n"
            "Today is the day! {{eventTitle}} starts at {{eventTime}} at {{eventVenue}}.\n"
            "{{tableName?}}\n\n"
            "See you soon!"
        ),
        MessageKind.THANK_YOU: (
            "Hello {{guestName}}!\n\n"
            "Thank you for celebrating {{eventTitle}} with us!"
        ),
    },
}

DEFAULT_BUTTONS = {
    "he": ("מגיע/ה", "לא מגיע/ה"),
    "en": ("Attending", "Not attending"),
}

# Kinds whose buttons shape asks the guest for an RSVP answer
RSVP_KINDS = (MessageKind.INVITE, MessageKind.REMINDER)

# Numbered variables for approved WhatsApp content templates
CONTENT_VARIABLE_SLOTS = {
    "1": "guestName",
    "2": "eventTitle",
    "3": "eventVenue",
    "4": "eventLocation",
    "5": "eventDate",
    "6": "eventTime",
    "8": "tableName",
    "11": "rsvpLink",
}


def default_template_id(message_kind: str, locale: str) -> str:
    if locale not in SUPPORTED_LOCALES:
        locale = DEFAULT_LOCALE
    return f"default:{message_kind}:{locale}"


def default_templates() -> Dict[str, TemplateDefinition]:
    """Built-in templates for every message kind and locale"""
    templates = {}
    for locale, bodies in DEFAULT_BODIES.items():
        for kind, body in bodies.items():
            template_id = default_template_id(kind, locale)
            templates[template_id] = TemplateDefinition(
                id=template_id,
                message_kind=kind,
                locale=locale,
                body=body,
                buttons=DEFAULT_BUTTONS[locale] if kind in RSVP_KINDS else (),
            )
    return templates


def build_template_catalog(db: Session, account_id: int) -> Dict[str, TemplateDefinition]:
    """Defaults plus the account's active custom templates, keyed by template id"""
    catalog = default_templates()
    custom = db.query(MessageTemplate).filter(
        MessageTemplate.account_id == account_id,
        MessageTemplate.is_active.is_(True)
    ).all()
    for template in custom:
        catalog[str(template.id)] = TemplateDefinition(
            id=str(template.id),
            message_kind=template.message_kind,
            locale=template.locale,
            body=template.body,
            buttons=tuple(template.buttons or ()),
            content_sid=template.content_sid,
        )
    return catalog


def get_rsvp_link(slug: str, base_url: Optional[str] = None) -> str:
    """Public RSVP page for a guest"""
    return f"{(base_url or settings.APP_URL).rstrip('/')}/rsvp/{slug}"


def _format_date(value: datetime, locale: str) -> str:
    if locale == "en":
        return value.strftime("%m/%d/%Y")
    return value.strftime("%d.%m.%Y")


def _format_time(value: datetime, locale: str) -> str:
    if locale == "en":
        return value.strftime("%I:%M %p").lstrip("0")
    return value.strftime("%H:%M")


class MessageComposer:
    """Renders templates from a preloaded catalog.

    Args:
        templates: Mapping of template id to TemplateDefinition
        link_base_url: Base URL of the public RSVP pages (defaults to APP_URL)
        display_tz: Timezone used for {{eventDate}} and {{eventTime}}
    """

    def __init__(
        self,
        templates: Mapping[str, TemplateDefinition],
        link_base_url: Optional[str] = None,
        display_tz: tzinfo = timezone.utc
    ):
        self.templates = dict(templates)
        self.link_base_url = link_base_url
        self.display_tz = display_tz

    def has_template(self, template_id: str) -> bool:
        return template_id in self.templates

    def build_variables(self, recipient: Any, event: Any, overrides: Optional[Mapping[str, Any]] = None) -> Dict[str, str]:
        """Placeholder values for one guest; empty strings mean 'not available'"""
        locale = getattr(event, "locale", None) or DEFAULT_LOCALE
        starts_at = as_utc(getattr(event, "starts_at", None))
        local_start = starts_at.astimezone(self.display_tz) if starts_at else None
        slug = getattr(recipient, "slug", None)
        location = getattr(event, "location", None) or ""

        variables = {
            "guestName": getattr(recipient, "name", None) or "",
            "eventTitle": getattr(event, "title", None) or "",
            "rsvpLink": get_rsvp_link(slug, self.link_base_url) if slug else "",
            "eventDate": _format_date(local_start, locale) if local_start else "",
            "eventTime": _format_time(local_start, locale) if local_start else "",
            "eventLocation": location,
            "eventVenue": getattr(event, "venue", None) or location,
            "tableName": getattr(recipient, "table_name", None) or "",
        }
        for key, value in (overrides or {}).items():
            if key in variables and value is not None:
                variables[key] = str(value)
        return variables

    def render_body(self, body: str, variables: Mapping[str, str], optional_names: Iterable[str] = ()) -> str:
        """Substitute placeholders; raises MISSING_REQUIRED_FIELD for empty required ones"""
        missing = []
        optional_names = set(optional_names)

        def _replace(match):
            name, optional = match.group(1), match.group(2)
            value = variables.get(name, "")
            if not value and not optional and name not in optional_names:
                missing.append(name)
            return value

        rendered = PLACEHOLDER_RE.sub(_replace, body)
        if missing:
            raise ComposeError(
                ComposeError.MISSING_REQUIRED_FIELD,
                f"missing value for {', '.join(sorted(set(missing)))}"
            )
        # Optional placeholders on their own line leave blank runs behind
        return re.sub(r"\n{3,}", "\n\n", rendered).strip()

    def compose(
        self,
        template_id: str,
        recipient: Any,
        event: Any,
        overrides: Optional[Mapping[str, Any]] = None,
        shape: str = MessageFormat.PLAIN
    ) -> RenderedMessage:
        """
        Render the template for one recipient.

        Args:
            template_id: Key into the catalog
            recipient: Guest-like object (name, slug, table_name)
            event: Event-like object (title, starts_at, location, venue, locale, image_url)
            overrides: Variable overrides, plus optional imageUrl / contentSid
            shape: 'plain', 'buttons' or 'image'

        Returns:
            RenderedMessage

        Raises:
            ComposeError: TEMPLATE_NOT_FOUND or MISSING_REQUIRED_FIELD
        """
        template = self.templates.get(template_id)
        if template is None:
            raise ComposeError(ComposeError.TEMPLATE_NOT_FOUND, f"template '{template_id}' does not exist")
        if shape not in MessageFormat.ALL:
            raise ValueError(f"Unknown message shape '{shape}'")

        overrides = overrides or {}
        variables = self.build_variables(recipient, event, overrides)

        if shape == MessageFormat.BUTTONS:
            # The guest answers with a button, so the link may be absent
            text = self.render_body(template.body, variables, optional_names=("rsvpLink",))
            buttons = template.buttons or DEFAULT_BUTTONS.get(template.locale, DEFAULT_BUTTONS[DEFAULT_LOCALE])
            content_sid = overrides.get("contentSid") or template.content_sid
            return RenderedMessage(
                body=text,
                shape=shape,
                buttons=tuple(buttons),
                content_sid=content_sid,
                content_variables=self._content_variables(variables) if content_sid else {},
            )

        if not variables["rsvpLink"]:
            raise ComposeError(ComposeError.MISSING_REQUIRED_FIELD, "missing value for rsvpLink")

        text = self.render_body(template.body, variables)
        if variables["rsvpLink"] not in text:
            text = f"{text}\n\n{variables['rsvpLink']}"

        media_url = None
        if shape == MessageFormat.IMAGE:
            media_url = overrides.get("imageUrl") or getattr(event, "image_url", None)
            if not media_url:
                raise ComposeError(ComposeError.MISSING_REQUIRED_FIELD, "missing value for imageUrl")

        return RenderedMessage(body=text, shape=shape, media_url=media_url)

    @staticmethod
    def _content_variables(variables: Mapping[str, str]) -> Dict[str, str]:
        return {slot: variables[name] for slot, name in CONTENT_VARIABLE_SLOTS.items() if variables.get(name)}
