"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  LeadHub CRM - Inbound Normalizer                                            ║
║                                                                              ║
║  (source, payload provider) -> InboundEvent canonique                        ║
║                                                                              ║
║  RÈGLES:                                                                     ║
║  - Fonction TOTALE: ne lève jamais, même sur payload malformé                ║
║  - Champ absent -> None                                                      ║
║  - Téléphone: "@suffixe" retiré puis chiffres uniquement                     ║
║  - Source inconnue -> mapper générique (channel explicite ou WHATSAPP)       ║
║  - Le payload brut est toujours conservé sur le message                      ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import re
from typing import Any, Dict, Optional

from models.inbound import InboundEvent, InboundLead, InboundMessage

DEFAULT_CHANNEL = "WHATSAPP"

# Sources génériques dont le nom est aussi un channel
SOURCE_CHANNELS = {
    "whatsapp": "WHATSAPP",
    "email": "EMAIL",
    "website": "WEBSITE",
}


# ==================== FIELD HELPERS ====================

def _text(value: Any) -> Optional[str]:
    """Scalar -> stripped str, everything else (dict, list, empty) -> None"""
    if value is None or isinstance(value, (dict, list, tuple, set, bool)):
        return None
    cleaned = str(value).strip()
    return cleaned or None


def _first(*values: Any) -> Optional[str]:
    """First usable scalar, in priority order"""
    for value in values:
        cleaned = _text(value)
        if cleaned:
            return cleaned
    return None


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def normalize_phone(value: Any) -> Optional[str]:
    """'91 90000-00001@c.us' -> '919000000001'"""
    raw = _text(value)
    if not raw:
        return None
    without_suffix = re.sub(r"@.*$", "", raw)
    digits = re.sub(r"\D", "", without_suffix)
    return digits or None


def normalize_email(value: Any) -> Optional[str]:
    cleaned = _text(value)
    return cleaned.lower() if cleaned else None


def normalize_name(value: Any) -> Optional[str]:
    return _text(value)


def normalize_channel(value: Any, fallback: str = DEFAULT_CHANNEL) -> str:
    cleaned = _text(value)
    return (cleaned or fallback).upper()


def build_message_body(parts, separator: str = " | ") -> Optional[str]:
    kept = [p for p in (_text(part) for part in parts) if p]
    return separator.join(kept) or None


# ==================== PER-SOURCE MAPPERS ====================

def _map_indiamart(payload: Dict[str, Any]) -> InboundEvent:
    lead = _as_dict(payload.get("lead"))
    return InboundEvent(
        source="indiamart",
        channel="INDIAMART",
        lead=InboundLead(
            name=normalize_name(_first(
                lead.get("name"), payload.get("sender_name"), payload.get("name"),
                payload.get("full_name"), payload.get("buyer_name"),
            )),
            phone=normalize_phone(_first(
                lead.get("phone"), payload.get("sender_mobile"), payload.get("phone"),
                payload.get("mobile"), payload.get("sender_phone"),
            )),
            email=normalize_email(_first(
                lead.get("email"), payload.get("sender_email"), payload.get("email"),
            )),
        ),
        message=InboundMessage(
            body=build_message_body([
                _first(payload.get("product_name"), payload.get("product")),
                _first(payload.get("subject"), payload.get("enquiry_subject")),
                _first(payload.get("message"), payload.get("requirement"), payload.get("enquiry_message")),
            ], separator=" - "),
            external_id=_first(payload.get("query_id"), payload.get("enquiry_id"), payload.get("external_id")),
            raw_payload=payload,
        ),
        triage_reason="IndiaMart enquiry",
    )


def _map_justdial(payload: Dict[str, Any]) -> InboundEvent:
    lead = _as_dict(payload.get("lead"))
    city = _text(payload.get("city"))
    return InboundEvent(
        source="justdial",
        channel="JUSTDIAL",
        lead=InboundLead(
            name=normalize_name(_first(
                lead.get("name"), payload.get("name"), payload.get("sender_name"),
                payload.get("customer_name"),
            )),
            phone=normalize_phone(_first(
                lead.get("phone"), payload.get("phone"), payload.get("mobile"),
                payload.get("contact"),
            )),
            email=normalize_email(_first(lead.get("email"), payload.get("email"))),
        ),
        message=InboundMessage(
            body=build_message_body([
                _first(payload.get("requirement"), payload.get("message"), payload.get("enquiry")),
                f"City: {city}" if city else None,
            ]),
            external_id=_first(payload.get("lead_id"), payload.get("enquiry_id"), payload.get("external_id")),
            raw_payload=payload,
        ),
        triage_reason="JustDial enquiry",
    )


def _map_website(payload: Dict[str, Any]) -> InboundEvent:
    lead = _as_dict(payload.get("lead"))
    message = payload.get("message")
    message_dict = _as_dict(message)
    return InboundEvent(
        source="website_form",
        channel="WEBSITE",
        lead=InboundLead(
            name=normalize_name(_first(lead.get("name"), payload.get("name"))),
            phone=normalize_phone(_first(lead.get("phone"), payload.get("phone"))),
            email=normalize_email(_first(lead.get("email"), payload.get("email"))),
        ),
        message=InboundMessage(
            body=_first(message_dict.get("body"), message, payload.get("requirement")),
            external_id=_first(message_dict.get("externalId"), payload.get("externalId")),
            raw_payload=payload,
        ),
        triage_reason="Website enquiry",
    )


def _map_generic(source: str, payload: Dict[str, Any]) -> InboundEvent:
    lead = _as_dict(payload.get("lead"))
    message = _as_dict(payload.get("message"))
    channel = normalize_channel(payload.get("channel"), SOURCE_CHANNELS.get(source, DEFAULT_CHANNEL))
    raw_payload = message.get("rawPayload")
    return InboundEvent(
        source=source,
        channel=channel,
        lead=InboundLead(
            name=normalize_name(lead.get("name")),
            phone=normalize_phone(lead.get("phone")),
            email=normalize_email(lead.get("email")),
        ),
        message=InboundMessage(
            body=_text(message.get("body")),
            external_id=_text(message.get("externalId")),
            raw_payload=raw_payload if raw_payload is not None else payload,
        ),
        triage_reason=f"{channel} inbound",
    )


def normalize_inbound(source: Any, payload: Any) -> InboundEvent:
    """
    Map a provider payload to the canonical inbound event.

    Never raises: a payload we cannot read yields an event with an all-None
    lead and the raw payload kept on the message for manual triage.
    """
    payload_dict = _as_dict(payload)
    normalized_source = (_first(source, payload_dict.get("source")) or "whatsapp").lower()

    if normalized_source == "indiamart":
        return _map_indiamart(payload_dict)
    if normalized_source == "justdial":
        return _map_justdial(payload_dict)
    if normalized_source in ("website", "website_form"):
        return _map_website(payload_dict)

    event = _map_generic(normalized_source, payload_dict)
    if not isinstance(payload, dict):
        event.message.raw_payload = payload
    return event
