import logging
from os import path
from typing import Any, Dict
from types import ModuleType

import yaml


logger = logging.getLogger(__name__)


def get_resource_path(filename: str, resource_module: ModuleType) -> str:
    return path.join(path.dirname(resource_module.__file__), filename)


def load_resource(filename: str, resource_module: ModuleType) -> str:
    """Read a data file shipped inside a package (e.g. the default config)."""
    return load_file(get_resource_path(filename, resource_module))


def load_file(filepath: str) -> str:
    logger.debug("Reading %s", filepath)
    with open(filepath, "r", encoding="utf8") as fd:
        return fd.read()


def yaml_to_dict(yaml_str: str) -> Dict[str, Any]:
    """
    Parse a YAML document. An empty document gives an empty dict.
    """
    return yaml.safe_load(yaml_str) or {}
