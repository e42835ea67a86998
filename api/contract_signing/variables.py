"""
Variable definitions and typed field values.

A template carries an ordered list of ``VariableDefinition``. Contract data
is stored as a plain ``name -> str`` map; before rendering it is turned into
``FieldValues``, where signature fields (known from the definitions, never
guessed from the value) hold an ``ImageValue`` and everything else a
``TextValue``.
"""

import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Union

from pydantic import BaseModel, ValidationError, field_validator, model_validator

from .errors import InvalidVariableDefinitions
from .utils import canonical_json

NAME_PATTERN = r"^[a-zA-Z0-9_]+$"


class VariableType(str, Enum):
    TEXT = "text"
    NUMBER = "number"
    DATE = "date"
    MONTH = "month"
    TAX_ID = "tax_id"
    SIGNATURE = "signature"


class LinkedFields(BaseModel):
    """Fields filled from a company registry lookup of a tax id."""
    denomination: str
    address: str
    registry_number: str

    @field_validator("denomination", "address", "registry_number")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("linked field names must not be empty")
        return value


class VariableDefinition(BaseModel):
    name: str
    type: VariableType = VariableType.TEXT
    label: Optional[str] = None
    linked_fields: Optional[LinkedFields] = None

    @field_validator("name")
    @classmethod
    def _identifier_safe(cls, value: str) -> str:
        if not re.match(NAME_PATTERN, value or ""):
            raise ValueError("only letters, digits and _ are allowed")
        return value

    @model_validator(mode="after")
    def _tax_id_needs_links(self):
        if self.type == VariableType.TAX_ID and self.linked_fields is None:
            raise ValueError("tax_id variables require linked fields: denomination, address, registry_number")
        return self


def parse_variable_definitions(raw) -> List[VariableDefinition]:
    """Validate a definition list coming from the authoring surface."""
    if raw is None or raw == "":
        return []
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise InvalidVariableDefinitions(f"variable definitions are not valid JSON: {exc.msg}")
    if not isinstance(raw, list):
        raise InvalidVariableDefinitions("variable definitions must be a list")
    try:
        defs = [d if isinstance(d, VariableDefinition) else VariableDefinition.model_validate(d) for d in raw]
    except ValidationError as exc:
        first = exc.errors()[0]
        raise InvalidVariableDefinitions(first.get("msg") or "invalid variable definitions")
    names = [d.name for d in defs]
    if len(set(names)) != len(names):
        raise InvalidVariableDefinitions("variable names must be unique")
    return defs


def definitions_to_json(defs: Iterable[VariableDefinition]) -> str:
    return canonical_json([d.model_dump(mode="json", exclude_none=True) for d in defs])


def definitions_from_json(value: Optional[str]) -> List[VariableDefinition]:
    if not value:
        return []
    return [VariableDefinition.model_validate(d) for d in json.loads(value)]


def signature_field_names(defs: Iterable[VariableDefinition]) -> List[str]:
    return [d.name for d in defs if d.type == VariableType.SIGNATURE]


@dataclass(frozen=True)
class TextValue:
    text: str


@dataclass(frozen=True)
class ImageValue:
    data_url: Optional[str]


FieldValue = Union[TextValue, ImageValue]
FieldValues = Dict[str, FieldValue]


def to_field_values(variables: Mapping[str, object], signature_fields: Iterable[str] = ()) -> FieldValues:
    signature_fields = set(signature_fields)
    values: FieldValues = {}
    for name, raw in variables.items():
        if name in signature_fields:
            values[name] = ImageValue(raw if isinstance(raw, str) and raw.strip() else None)
        else:
            values[name] = TextValue("" if raw is None else str(raw))
    for name in signature_fields:
        values.setdefault(name, ImageValue(None))
    return values


def text_of(values: FieldValues, name: Optional[str]) -> str:
    value = values.get(name) if name else None
    if isinstance(value, TextValue):
        return value.text
    return ""


def strip_signatures(variables: Mapping[str, object], signature_fields: Iterable[str]) -> Dict[str, str]:
    """Variables as stored on a contract, minus any signature entries."""
    signature_fields = set(signature_fields)
    return {
        name: "" if value is None else str(value)
        for name, value in variables.items()
        if name not in signature_fields
    }
