"""
Deficiency schema for verification verdicts.

Deficiencies are stored as JSON on VerificationDB. Every stored item carries
a `schema_version`; rows written before versioning (or by older extractors)
are upgraded on read by `migrate_deficiency`.

Version history:
- v1: {"type", "description"} plus optional free-form keys.
- v2: adds "severity", "field", "expected", "actual", "schema_version".
"""
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from ..errors import ValidationError

CURRENT_SCHEMA_VERSION = 2


class DeficiencySeverity(str, Enum):
    CRITICAL = "critical"
    MAJOR = "major"
    MINOR = "minor"


class DeficiencyType(str, Enum):
    """Known deficiency categories; unknown ones fall back to OTHER."""
    COVERAGE_BELOW_MINIMUM = "coverage_below_minimum"
    MISSING_COVERAGE = "missing_coverage"
    POLICY_EXPIRED = "policy_expired"
    INSURED_NAME_MISMATCH = "insured_name_mismatch"
    ABN_MISMATCH = "abn_mismatch"
    MISSING_ENDORSEMENT = "missing_endorsement"
    PRINCIPAL_NOT_INDEMNIFIED = "principal_not_indemnified"
    UNREADABLE_DOCUMENT = "unreadable_document"
    WRONG_DOCUMENT_TYPE = "wrong_document_type"
    OTHER = "other"


class Deficiency(BaseModel):
    """One problem found on a certificate."""
    schema_version: int = Field(default=CURRENT_SCHEMA_VERSION, description="Schema version of this record")
    type: DeficiencyType = Field(..., description="Deficiency category")
    description: str = Field(..., min_length=1, description="Human-readable description")
    severity: DeficiencySeverity = Field(default=DeficiencySeverity.MAJOR)
    field: Optional[str] = Field(default=None, description="Certificate field the check ran against")
    expected: Optional[str] = None
    actual: Optional[str] = None


def migrate_deficiency(raw: Dict[str, Any]) -> Dict[str, Any]:
    """
    Upgrade a stored deficiency dict to the current schema.

    v1 records from the extractor sometimes used `message` instead of
    `description` and `check_name` instead of `type`.
    """
    data = dict(raw)
    version = data.get("schema_version", 1)

    if version < 2:
        if not data.get("description"):
            data["description"] = data.pop("message", None) or "Unknown issue"
        else:
            data.pop("message", None)
        if not data.get("type"):
            data["type"] = data.pop("check_name", None) or DeficiencyType.OTHER.value
        else:
            data.pop("check_name", None)
        data.setdefault("severity", DeficiencySeverity.MAJOR.value)
        data["schema_version"] = 2

    known_types = {t.value for t in DeficiencyType}
    if data.get("type") not in known_types:
        data.setdefault("actual", str(data.get("type")))
        data["type"] = DeficiencyType.OTHER.value

    return data


def parse_deficiencies(items: Optional[Iterable[Any]]) -> List[Deficiency]:
    """
    Validate incoming deficiencies (order preserved).

    Raises ValidationError on a malformed item so nothing is persisted.
    """
    if items is None:
        return []
    if isinstance(items, (str, bytes, dict)):
        raise ValidationError("deficiencies must be a list")

    parsed = []
    for index, item in enumerate(items):
        if isinstance(item, Deficiency):
            parsed.append(item)
            continue
        if not isinstance(item, dict):
            raise ValidationError(f"deficiency #{index} must be an object", {"index": index})
        try:
            parsed.append(Deficiency.model_validate(migrate_deficiency(item)))
        except PydanticValidationError as e:
            raise ValidationError(
                f"deficiency #{index} is invalid",
                {"index": index, "errors": e.errors(include_url=False)},
            )
    return parsed


def load_deficiencies(stored: Optional[Iterable[Dict[str, Any]]]) -> List[Deficiency]:
    """Read deficiencies back from a stored row, tolerating legacy shapes."""
    result = []
    for item in stored or []:
        if not isinstance(item, dict):
            continue
        try:
            result.append(Deficiency.model_validate(migrate_deficiency(item)))
        except PydanticValidationError:
            result.append(Deficiency(type=DeficiencyType.OTHER, description=str(item.get("description") or item)))
    return result


def dump_deficiencies(deficiencies: Iterable[Deficiency]) -> List[Dict[str, Any]]:
    return [d.model_dump(mode="json") for d in deficiencies]
