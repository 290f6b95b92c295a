"""Provider code vocabulary, template-name parser and code builder.

Catalog templates encode the third-party systems they were built for in
their display name:

    "APTEM-BKSB-HUBSPOT - Operations Leader v1.2"
     └────── codes ─────┘   └─ role ──────┘ └ver┘

    "ONEFILE - Immediate Priorities v1.5"   → LMS only
    "Universal Dashboard v1.0"              → no separator, universal

``parse_template_name`` turns a name into a ParsedTemplate;
``build_provider_code`` renders an organization's configured providers
into the same code segment. Both are pure and never raise.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, fields

# Closed vocabularies per capability slot.
LMS_CODES = frozenset({"APTEM", "BUD", "ONEFILE"})
ENGLISH_MATHS_CODES = frozenset({"BKSB", "FUNC", "SMARTASSESSOR"})
CRM_CODES = frozenset({"HUBSPOT", "SF", "DYNAMICS", "ZOHO"})
HR_CODES = frozenset({"SAGEHR", "BAMBOOHR"})

KNOWN_PROVIDER_CODES: dict[str, frozenset[str]] = {
    "lms": LMS_CODES,
    "english_maths": ENGLISH_MATHS_CODES,
    "crm": CRM_CODES,
    "hr": HR_CODES,
}

# Slot order used by the builder and by the scorer.
SLOT_ORDER: tuple[str, ...] = ("lms", "english_maths", "crm", "hr")

NAME_SEPARATOR = " - "

_TRAILING_VERSION = re.compile(r"\s*v?(\d+\.\d+)\s*$")


@dataclass(frozen=True)
class ProviderCodes:
    """Codes an organization has configured, one optional field per slot."""

    lms: str | None = None
    english_maths: str | None = None
    crm: str | None = None
    hr: str | None = None

    def present(self) -> dict[str, str]:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name)}

    def to_dict(self) -> dict:
        return {
            "lms": self.lms,
            "english_maths": self.english_maths,
            "crm": self.crm,
            "hr": self.hr,
        }


@dataclass(frozen=True)
class ParsedTemplate:
    """Read-only view of a template name. Never persisted by the parser."""

    lms: str | None = None
    english_maths: str | None = None
    crm: str | None = None
    hr: str | None = None
    provider_code: str | None = None
    role_name: str | None = None
    version: str | None = None

    @property
    def codes(self) -> ProviderCodes:
        return ProviderCodes(
            lms=self.lms, english_maths=self.english_maths, crm=self.crm, hr=self.hr,
        )

    @property
    def has_codes(self) -> bool:
        return any((self.lms, self.english_maths, self.crm, self.hr))

    @classmethod
    def from_template(cls, template) -> "ParsedTemplate":
        """Build from a ReportTemplate's stored structured columns."""
        return cls(
            lms=template.lms_code or None,
            english_maths=template.english_maths_code or None,
            crm=template.crm_code or None,
            hr=template.hr_code or None,
            provider_code=template.provider_code or None,
            role_name=template.role_name or None,
            version=template.report_version or None,
        )

    def to_dict(self) -> dict:
        return {
            "provider_code": self.provider_code,
            "lms_code": self.lms,
            "english_maths_code": self.english_maths,
            "crm_code": self.crm,
            "hr_code": self.hr,
            "role_name": self.role_name,
            "version": self.version,
        }


def classify_code(piece: str) -> str | None:
    """Return the slot a code belongs to, or None if it is not in any vocabulary."""
    for slot in SLOT_ORDER:
        if piece in KNOWN_PROVIDER_CODES[slot]:
            return slot
    return None


def parse_template_name(name: str | None) -> ParsedTemplate:
    """Parse a catalog template name into provider codes, role and version.

    Only the first ``" - "`` is significant; anything after it, including
    further separators, belongs to the role segment. Unknown code pieces are
    dropped. A name without a separator yields an empty ParsedTemplate,
    which is how universal templates are represented.
    """
    if not name or NAME_SEPARATOR not in name:
        return ParsedTemplate()

    code_part, role_part = name.split(NAME_SEPARATOR, 1)
    code_part = code_part.strip()

    slots: dict[str, str] = {}
    for raw in code_part.split("-"):
        piece = raw.strip().upper()
        if not piece:
            continue
        slot = classify_code(piece)
        if slot is not None:
            slots[slot] = piece

    role_part = role_part.strip()
    version = None
    role_name = role_part or None
    match = _TRAILING_VERSION.search(role_part)
    if match:
        version = match.group(1)
        role_name = role_part[:match.start()].strip() or None

    return ParsedTemplate(
        provider_code=code_part or None,
        role_name=role_name,
        version=version,
        **slots,
    )


def build_provider_code(codes: ProviderCodes) -> str:
    """Render configured codes as the canonical code segment (e.g. "APTEM-BKSB-HUBSPOT")."""
    return "-".join(getattr(codes, slot) for slot in SLOT_ORDER if getattr(codes, slot))
