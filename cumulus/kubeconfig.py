from __future__ import annotations

import os
import shutil
from typing import Any, Dict, List, Optional

from ruamel.yaml import YAML

from cumulus.logger import logger
from cumulus.utils import read_yaml_file, utc_now

KUBE_DIR = os.path.join("~", ".kube")


class KubeconfigMerger:
    def __init__(self, config: Optional[Dict[str, Any]] = None) -> None:
        self.config = config or {}

    def _entries_by_key(self, key: str) -> List[Any]:
        self.config[key] = self.config.get(key) or []
        entries = self.config[key]
        if not isinstance(entries, list):
            raise ValueError(
                f"Tried to insert into {key}, which is a {type(entries)} not a list."
            )
        return entries

    def _index_same_name(
        self, entries: List[Any], new_entry: Dict[str, Any]
    ) -> Optional[int]:
        if "name" in new_entry:
            for i, entry in enumerate(entries):
                if entry.get("name") == new_entry["name"]:
                    return i
        return None

    def insert_entry(self, key: str, new_entry: Any) -> None:
        entries = self._entries_by_key(key)
        same_name_index = self._index_same_name(entries, new_entry)
        if same_name_index is None:
            entries.append(new_entry)
        else:
            entries[same_name_index] = new_entry

    def merge(self, new_config: Dict[str, Any]) -> None:
        for cluster in new_config.get("clusters", []):
            self.insert_entry("clusters", cluster)
        for user in new_config.get("users", []):
            self.insert_entry("users", user)
        for context in new_config.get("contexts", []):
            self.insert_entry("contexts", context)

        self.config["current-context"] = new_config["current-context"]

        for key in new_config.keys():
            if key not in ["clusters", "users", "contexts", "current-context"]:
                self.config[key] = new_config[key]


def _write_yaml(path: str, data: Dict[str, Any]) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    # Credentials files must only be readable by their owner
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as file:
        yaml = YAML()
        yaml.dump(data, file)
    os.chmod(path, 0o600)


def kubeconfig_path(cluster_name: str, kube_dir: str = KUBE_DIR) -> str:
    return os.path.join(os.path.expanduser(kube_dir), f"config-{cluster_name}")


def save_kubeconfig(
    cluster_name: str, kubeconfig: Dict[str, Any], kube_dir: str = KUBE_DIR
) -> str:
    """
    Writes the kubeconfig of a cluster to its own file, ~/.kube/config-<name>.

    Returns:
        str: The path of the written file.
    """
    path = kubeconfig_path(cluster_name, kube_dir)
    _write_yaml(path, kubeconfig)
    logger.info(f"Kubeconfig saved to {path}")
    return path


def merge_kubeconfig(
    kubeconfig: Dict[str, Any], kube_dir: str = KUBE_DIR
) -> Optional[str]:
    """
    Merges a kubeconfig document into ~/.kube/config and switches the current
    context to it. Entries with the same name are replaced.

    The existing file is copied to a timestamped backup first.

    Returns:
        Optional[str]: The path of the backup, or None if there was no file to
        back up.
    """
    path = os.path.join(os.path.expanduser(kube_dir), "config")
    backup = None
    if os.path.exists(path):
        backup = f"{path}.backup-{utc_now().strftime('%Y%m%d%H%M%S')}"
        shutil.copy2(path, backup)
        logger.debug(f"Backed up {path} to {backup}")

    merger = KubeconfigMerger(read_yaml_file(path))
    merger.merge(kubeconfig)

    sorted_config = {k: merger.config[k] for k in sorted(merger.config)}
    _write_yaml(path, sorted_config)
    logger.info(f"Merged kubeconfig into {path}")
    return backup
