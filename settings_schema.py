"""
Settings instruction schema for the Stereo Mod Installer.

Config archives may ship a JSON instruction document describing, for each
configuration artifact a mod needs to touch (a text/INI file or a registry
key), where every named setting lives and how it is written.  The caller
(the UI) supplies a second JSON document of overrides that pick values for
some of those settings.

Instruction document (one ``Root`` per target artifact):

[
    {
        "Name": "Engine settings",
        "KeyValueSeparator": 0,
        "DefaultPreset": "[/Script/Engine.GameUserSettings]\\r\\n",
        "ConfigFilePaths": [
            {"Path": "%LOCALAPPDATA%\\\\Game\\\\Saved\\\\Config\\\\GameUserSettings.ini"}
        ],
        "Children": [
            {
                "ID": "res",
                "ValueRangeType": 3,
                "Children": [
                    {"KeyOrSearchPattern": "ResolutionSizeX", "OverrideValue": "%ResWidth%"},
                    {"KeyOrSearchPattern": "ResolutionSizeY", "OverrideValue": "%ResHeight%"}
                ]
            },
            {
                "ID": "vsync",
                "KeyOrSearchPattern": "bUseVSync",
                "PrecedingElement": "[/Script/Engine.GameUserSettings]",
                "AvailableSettingValues": [
                    {"FriendlyName": "On", "Value": "True"},
                    {"FriendlyName": "Off", "Value": "False"}
                ]
            }
        ]
    }
]

Override document:

[{"GameSettingId": "res", "Value": "2560x1440"}, {"GameSettingId": "vsync", "Value": "off"}]

Property names are accepted in PascalCase (as published) or camelCase.
Unknown properties are ignored and ``null`` means "use the default".
"""

from __future__ import annotations

import json
import logging
from enum import IntEnum
from typing import Any, Iterable

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)

from errors import MalformedInstructionDocument

RESOLUTION_VALUE_RANGE_TYPE = 3
VALUE_PLACEHOLDER = "{0}"

_log = logging.getLogger(__name__)


def _alias(*names: str) -> AliasChoices:
    return AliasChoices(*names)


class KeyValueSeparator(IntEnum):
    EQUALS = 0
    COLON = 1
    # Written with "=", and a definition without a key falls back to its id.
    SYNTHETIC_ID = 2

    @property
    def text(self) -> str:
        return ":" if self is KeyValueSeparator.COLON else "="


class RegistryValueType(IntEnum):
    UNSPECIFIED = 0
    STRING = 1
    DWORD = 4


class SchemaModel(BaseModel):
    model_config = ConfigDict(
        extra="ignore",
        populate_by_name=True,
        coerce_numbers_to_str=True,
    )

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data


def _without_nulls(v: Any) -> Any:
    if isinstance(v, list):
        return [item for item in v if item is not None]
    return v


class AvailableSettingValue(SchemaModel):
    """One selectable value: ``friendly_name`` is what the UI shows."""

    value: str | None = Field(None, validation_alias=_alias("Value", "value"))
    friendly_name: str | None = Field(
        None, validation_alias=_alias("FriendlyName", "friendlyName")
    )

    def matches(self, raw: str | None) -> bool:
        if raw is None:
            return False
        wanted = raw.casefold()
        return any(
            candidate is not None and candidate.casefold() == wanted
            for candidate in (self.friendly_name, self.value)
        )


class Child(SchemaModel):
    """One setting definition; may hold nested definitions."""

    id: str | None = Field(None, validation_alias=_alias("ID", "Id", "id"))
    name: str | None = Field(None, validation_alias=_alias("Name", "name"))
    children: list[Child] = Field(
        default_factory=list, validation_alias=_alias("Children", "children")
    )
    available_setting_values: list[AvailableSettingValue] | None = Field(
        None,
        validation_alias=_alias("AvailableSettingValues", "availableSettingValues"),
    )
    value_range_type: int = Field(
        0, validation_alias=_alias("ValueRangeType", "valueRangeType")
    )
    lower_range_limit: float = Field(
        0, validation_alias=_alias("LowerRangeLimit", "lowerRangeLimit")
    )
    upper_range_limit: float = Field(
        0, validation_alias=_alias("UpperRangeLimit", "upperRangeLimit")
    )
    step_size: float = Field(0, validation_alias=_alias("StepSize", "stepSize"))
    override_value: str | None = Field(
        None, validation_alias=_alias("OverrideValue", "overrideValue")
    )
    key_or_search_pattern: str | None = Field(
        None, validation_alias=_alias("KeyOrSearchPattern", "keyOrSearchPattern")
    )
    preceding_element: str | None = Field(
        None, validation_alias=_alias("PrecedingElement", "precedingElement")
    )
    registry_value_type: int = Field(
        0, validation_alias=_alias("RegistryValueType", "registryValueType")
    )

    # Condition fields are published by the settings editor but not evaluated.
    modify_instruction: int = Field(
        0, validation_alias=_alias("ModifyInstruction", "modifyInstruction")
    )
    comparison_operator: int = Field(
        0, validation_alias=_alias("ComparisonOperator", "comparisonOperator")
    )
    conditional_value_placeholder: str | None = Field(
        None,
        validation_alias=_alias(
            "ConditionalValuePlaceholder", "conditionalValuePlaceholder"
        ),
    )
    conditional_value: Any = Field(
        None,
        validation_alias=_alias(
            "ConditinalValue", "ConditionalValue", "conditionalValue"
        ),
    )
    use_condition: bool = Field(
        False, validation_alias=_alias("UseCondition", "useCondition")
    )

    @field_validator("children", "available_setting_values", mode="before")
    @classmethod
    def _drop_null_entries(cls, v: Any) -> Any:
        return _without_nulls(v)

    @property
    def is_resolution(self) -> bool:
        return self.value_range_type == RESOLUTION_VALUE_RANGE_TYPE

    @property
    def registry_kind(self) -> RegistryValueType:
        try:
            return RegistryValueType(self.registry_value_type)
        except ValueError:
            return RegistryValueType.UNSPECIFIED

    def lookup_value(self, raw: str | None) -> str | None:
        """Literal value for ``raw`` from this definition's value list."""
        for candidate in self.available_setting_values or ():
            if candidate.matches(raw) and candidate.value is not None:
                return candidate.value
        return None


class Root(SchemaModel):
    """Instruction tree for one configuration artifact (file or registry key)."""

    name: str | None = Field(None, validation_alias=_alias("Name", "name"))
    children: list[Child] = Field(
        default_factory=list, validation_alias=_alias("Children", "children")
    )
    key_value_separator: int = Field(
        0, validation_alias=_alias("KeyValueSeparator", "keyValueSeparator")
    )
    file_encoding: int = Field(
        0, validation_alias=_alias("FileEncoding", "fileEncoding")
    )
    lock_config_file: bool = Field(
        False, validation_alias=_alias("LockConfigFile", "lockConfigFile")
    )
    default_preset: str | None = Field(
        None, validation_alias=_alias("DefaultPreset", "defaultPreset", "defaultPresetText")
    )
    config_file_paths: list[str] = Field(
        default_factory=list,
        validation_alias=_alias("ConfigFilePaths", "configFilePaths"),
    )

    @field_validator("children", mode="before")
    @classmethod
    def _drop_null_children(cls, v: Any) -> Any:
        return _without_nulls(v)

    @field_validator("config_file_paths", mode="before")
    @classmethod
    def _flatten_paths(cls, v: Any) -> Any:
        if not isinstance(v, list):
            return v
        paths = []
        for entry in v:
            if isinstance(entry, dict):
                entry = entry.get("Path", entry.get("path"))
            if isinstance(entry, str) and entry:
                paths.append(entry)
        return paths

    @property
    def separator_mode(self) -> KeyValueSeparator:
        try:
            return KeyValueSeparator(self.key_value_separator)
        except ValueError:
            return KeyValueSeparator.EQUALS

    @property
    def is_inert(self) -> bool:
        return not self.children and not self.config_file_paths


class GameSettingOverride(SchemaModel):
    """A caller-chosen value for one setting id."""

    setting_id: str | None = Field(
        None,
        validation_alias=_alias("GameSettingId", "gameSettingId", "settingId", "SettingId"),
    )
    value: str | None = Field(None, validation_alias=_alias("Value", "value"))
    option_type: int = Field(0, validation_alias=_alias("OptionType", "optionType"))


Child.model_rebuild()

_ROOTS = TypeAdapter(list[Root | None])
_OVERRIDES = TypeAdapter(list[GameSettingOverride | None])


def _decode(data: str | bytes) -> Any:
    if isinstance(data, bytes):
        data = data.decode("utf-8-sig")
    return json.loads(data)


def parse_settings_document(data: str | bytes) -> list[Root]:
    """Parse an instruction document into its roots.

    Raises ``MalformedInstructionDocument`` unless the document decodes into
    at least one non-null ``Root``.
    """
    try:
        roots = [r for r in _ROOTS.validate_python(_decode(data)) if r is not None]
    except (UnicodeDecodeError, json.JSONDecodeError, ValidationError) as exc:
        raise MalformedInstructionDocument(f"Invalid settings document: {exc}") from exc
    if not roots:
        raise MalformedInstructionDocument("Settings document contains no definitions")
    return roots


def parse_overrides(data: str | bytes | None) -> list[GameSettingOverride]:
    """Parse an override document; ``None`` or blank input means no overrides."""
    if data is None or not data.strip():
        return []
    try:
        return [o for o in _OVERRIDES.validate_python(_decode(data)) if o is not None]
    except (UnicodeDecodeError, json.JSONDecodeError, ValidationError) as exc:
        raise MalformedInstructionDocument(f"Invalid settings overrides: {exc}") from exc


def find_child_by_id(children: Iterable[Child] | None, setting_id: str) -> Child | None:
    """Depth-first pre-order search; the first match wins."""
    for child in children or ():
        if child.id == setting_id:
            return child
        found = find_child_by_id(child.children, setting_id)
        if found is not None:
            return found
    return None


def find_definition(roots: Iterable[Root], setting_id: str) -> Child | None:
    for root in roots:
        found = find_child_by_id(root.children, setting_id)
        if found is not None:
            return found
    return None
