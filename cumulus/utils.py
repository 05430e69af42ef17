from __future__ import annotations

import socket
from datetime import datetime, timezone
from io import StringIO
from typing import Any, Dict

from ruamel.yaml import YAML


def to_yaml(obj: Any) -> str:
    """
    Converts a dictionary or a list to a YAML string.

    Args:
        obj (Any): The object to be converted.

    Returns:
        str: The YAML string.
    """
    yaml = YAML()
    yaml.indent(mapping=2, sequence=4, offset=2)
    buf = StringIO()
    yaml.dump(obj, buf)
    return buf.getvalue()


def read_yaml_file(path: str) -> Dict[str, Any]:
    """
    Reads a YAML file and returns its contents as a dictionary.

    If the file does not exist, it returns an empty dictionary.

    Args:
        path (str): The path to the YAML file.

    Returns:
        Dict[str, Any]: The contents of the YAML file as a dictionary, or an empty dictionary if the file does not exist.
    """
    yaml = YAML()
    try:
        with open(path, "r") as file:
            data = yaml.load(file)
    except FileNotFoundError:
        data = {}
    return data or {}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def get_hostname() -> str:
    try:
        return socket.gethostname()
    except OSError:
        return "unknown"
