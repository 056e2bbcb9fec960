import csv
import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Union

from pydantic import BaseModel

from distributor.models.Config import Config

ReportData = Union[BaseModel, dict, list]


def _plain(data: ReportData) -> Any:
    """Models become dicts, lists of models become lists of dicts"""
    if isinstance(data, BaseModel):
        return data.model_dump()
    if isinstance(data, list):
        return [_plain(d) for d in data]
    return data


def flatten(record: Any, prefix: str = "") -> dict[str, Any]:
    """
    One csv row from a nested record: `{"a": {"b": [1, 2]}}` becomes
    `{"a_b_0": 1, "a_b_1": 2}`
    """
    if isinstance(record, dict):
        items = [(f"{prefix}{k}", v) for k, v in record.items()]
    elif isinstance(record, list):
        items = [(f"{prefix}{i}", v) for i, v in enumerate(record)]
    else:
        return {prefix[:-1]: record}

    row: dict[str, Any] = {}
    for key, value in items:
        if isinstance(value, (dict, list)) and value:
            row.update(flatten(value, f"{key}_"))
        else:
            row[key] = value
    return row


def _atomic_write(path: str, write) -> None:
    # readers never see a half written report
    tmp = f"{path}.tmp"
    with open(tmp, "w", newline="") as f:
        write(f)
    os.replace(tmp, path)


@dataclass
class Writer:
    """Writes every report twice under the configured output dir: json as is, csv flattened"""

    config: Config

    @property
    def path(self) -> str:
        return self.config.output_dir

    @property
    def csv_path(self) -> str:
        return f"{self.path}/csv"

    @property
    def json_path(self) -> str:
        return f"{self.path}/json"

    def _create_dir(self) -> None:
        for path in (self.path, self.csv_path, self.json_path):
            Path(path).mkdir(parents=True, exist_ok=True)

    def to_json(self, data: ReportData, name: str) -> str:
        self._create_dir()
        path = f"{self.json_path}/{name}.json"
        _atomic_write(path, lambda f: json.dump(_plain(data), f, indent=4))
        return path

    def to_csv(self, data: ReportData, name: str) -> str:
        """A list becomes one row per item, anything else a single row"""
        self._create_dir()
        plain = _plain(data)
        rows = [flatten(r) for r in plain] if isinstance(plain, list) else [flatten(plain)]

        # rows flatten to different shapes when nested lists differ in length
        fieldnames = list(dict.fromkeys(k for row in rows for k in row))

        def write(f) -> None:
            writer = csv.DictWriter(f, fieldnames=fieldnames, restval="")
            writer.writeheader()
            writer.writerows(rows)

        path = f"{self.csv_path}/{name}.csv"
        _atomic_write(path, write)
        return path

    def to_csv_and_json(self, data: ReportData, name: str) -> None:
        self.to_json(data, name)
        self.to_csv(data, name)
