from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import ConfigError
from .models import Overrides

logger = logging.getLogger(__name__)

LEVEL_ENV_VAR = "AGENT_GUARD_SECURITY_LEVEL"


# --- Security configuration ---
class SecurityConfig(BaseModel):
    """The `security` section of the agent config. JSON keys use camelCase."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    level: int = Field(default=3, ge=1, le=5)
    shell_allow: List[str] = Field(default_factory=list, alias="shellAllowlistOverride")
    shell_block: List[str] = Field(default_factory=list, alias="shellBlocklistOverride")
    dir_allow: List[str] = Field(default_factory=list, alias="dirAllowlistOverride")
    dir_block: List[str] = Field(default_factory=list, alias="dirBlocklistOverride")
    domain_allow: List[str] = Field(default_factory=list, alias="domainAllowlistOverride")
    domain_block: List[str] = Field(default_factory=list, alias="domainBlocklistOverride")

    @property
    def overrides(self) -> Overrides:
        return Overrides(
            shell_allow=list(self.shell_allow),
            shell_block=list(self.shell_block),
            dir_allow=list(self.dir_allow),
            dir_block=list(self.dir_block),
            domain_allow=list(self.domain_allow),
            domain_block=list(self.domain_block),
        )


def _read_source(source: Union[str, Path, Mapping[str, Any]]) -> Dict[str, Any]:
    if isinstance(source, Mapping):
        return dict(source)
    path = Path(source)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigError(f"Cannot read security config {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Invalid JSON in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Security config {path} must be a JSON object")
    return data


def load_security_config(
    source: Union[str, Path, Mapping[str, Any], None] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> SecurityConfig:
    """
    Build a SecurityConfig from a mapping or a JSON file.

    A top-level `security` object is used when present, so the whole agent
    config file can be passed. AGENT_GUARD_SECURITY_LEVEL, when numeric,
    overrides the level.
    """
    data = _read_source(source) if source is not None else {}
    section = data.get("security", data)
    if not isinstance(section, dict):
        raise ConfigError("The `security` section must be an object")
    section = dict(section)

    env = os.environ if environ is None else environ
    raw_level = env.get(LEVEL_ENV_VAR)
    if raw_level is not None:
        try:
            section["level"] = int(raw_level)
        except ValueError:
            logger.warning("Ignoring non-numeric %s=%r", LEVEL_ENV_VAR, raw_level)

    try:
        return SecurityConfig.model_validate(section)
    except ValidationError as exc:
        raise ConfigError(f"Invalid security config: {exc}") from exc
