"""Flatten run output into rows for spreadsheet-like sinks."""

from __future__ import annotations

from collections.abc import Iterator
from typing import Any

DEFAULT_GROUP = "Default"


def iter_groups(output: Any) -> Iterator[tuple[str, list[dict[str, Any]]]]:
    """Yield ``(group_name, items)`` for a ``scrapeSchema``/``scrapeList`` value.

    Workflows store either a list of item lists or a mapping of named item
    lists; both shapes are accepted. Non-list groups are skipped.
    """
    if isinstance(output, dict):
        for name, items in output.items():
            if isinstance(items, list):
                yield str(name), [item for item in items if isinstance(item, dict)]
    elif isinstance(output, list):
        for items in output:
            if isinstance(items, list):
                yield DEFAULT_GROUP, [item for item in items if isinstance(item, dict)]


def artifact_url(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    if isinstance(value, dict) and isinstance(value.get("url"), str) and value["url"].strip():
        return value["url"]
    return None


def screenshot_entries(binary_output: dict[str, Any]) -> list[tuple[str, str]]:
    entries = []
    for key, value in (binary_output or {}).items():
        url = artifact_url(value)
        if key and key.strip() and url:
            entries.append((key, url))
    return entries


def _has_value(value: Any) -> bool:
    return value is not None and value != ""


def merge_related_data(
    serializable_output: dict[str, Any], binary_output: dict[str, Any]
) -> list[dict[str, Any]]:
    """Interleave schema fields, list rows and screenshots into flat records.

    Row ``i`` carries the ``i``-th schema field (``Label``/``Value``), the
    ``i``-th list row's columns and the ``i``-th screenshot (``Key``/
    ``Screenshot``), whichever exist.
    """
    schema_rows: list[tuple[str, str, Any]] = []
    for group, items in iter_groups(serializable_output.get("scrapeSchema")):
        for item in items:
            for key, value in item.items():
                if key and key.strip() and _has_value(value):
                    schema_rows.append((group, key, value))

    list_rows: list[dict[str, Any]] = []
    for _, items in iter_groups(serializable_output.get("scrapeList")):
        for item in items:
            if any(_has_value(value) for value in item.values()):
                list_rows.append(item)

    screenshots = screenshot_entries(binary_output)

    records: list[dict[str, Any]] = []
    for index in range(max(len(schema_rows), len(list_rows), len(screenshots))):
        record: dict[str, Any] = {}
        if index < len(schema_rows):
            _, label, value = schema_rows[index]
            record["Label"] = label
            record["Value"] = value
        if index < len(list_rows):
            record.update(
                {key: value for key, value in list_rows[index].items() if _has_value(value)}
            )
        if index < len(screenshots):
            record["Key"], record["Screenshot"] = screenshots[index]
        if record:
            records.append(record)
    return records
