"""Config module to read mapper settings from a TOML file.

The settings live in a ``[sheetmapper]`` table::

    [sheetmapper]
    normalize_label_text = true
    continue_type_bind_failure = true
"""

import logging
import sys
from pathlib import Path

from pydantic import BaseModel, ConfigDict

from .xlsx_common import MapperConfig

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

logger = logging.getLogger(__name__)

CONFIG_TABLE = "sheetmapper"


class MapperSettings(BaseModel):
    """The ``[sheetmapper]`` table; unknown keys are rejected."""

    model_config = ConfigDict(extra="forbid")

    normalize_label_text: bool = False
    regex_label_text: bool = False
    merge_cell_on_save: bool = False
    ignore_sheet_not_found: bool = False
    continue_type_bind_failure: bool = False
    skip_type_bind_failure: bool = False
    error_on_multiple_label_match: bool = False
    formula_recalculation_on_save: bool = True

    def to_config(self) -> MapperConfig:
        return MapperConfig(**self.model_dump())


def load_config(config_file: Path | None = None) -> MapperConfig:
    """Read a TOML file into a MapperConfig; a missing file gives the defaults."""
    if config_file is None:
        logger.debug("Initializing default config.")
        return MapperConfig()
    config_file = Path(config_file)
    if not config_file.exists():
        logger.warning('Configuration file "%s" not found.', config_file)
        return MapperConfig()
    with config_file.open(mode="rb") as fp:
        conf = tomllib.load(fp)
    logger.debug("Config loaded from: %s", config_file)
    settings = MapperSettings(**conf.get(CONFIG_TABLE, {}))
    return settings.to_config()
