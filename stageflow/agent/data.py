"""Data entries handed to the agents: selection, typing and prompt formatting."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable
from uuid import uuid4

from stageflow.schemas import DataEntry, DataSource, InputSuggestion, InputType


ALLOWED_INPUT_TYPES: tuple[InputType, ...] = ("text", "csv", "json")

NO_DATA_MESSAGE = "User did not attach additional datasets."

_SUFFIX_TYPES: dict[str, InputType] = {
    ".csv": "csv",
    ".json": "json",
    ".txt": "text",
}


def unique_id(prefix: str) -> str:
    """Opaque identifier for inputs, uploads and outputs."""
    return f"{prefix}-{uuid4().hex[:8]}"


def truncate(text: str | None, limit: int) -> str:
    """Keep the head of `text`, marking the cut with an ellipsis."""
    if not text:
        return ""
    return f"{text[:limit - 3]}..." if len(text) > limit else text


def truncate_tail(text: str | None, limit: int) -> str:
    """Keep the most recent tail of `text`, marking the cut with an ellipsis."""
    if not text:
        return ""
    return f"...{text[-(limit - 3):]}" if len(text) > limit else text


def sanitize_input_type(value: object) -> InputType:
    lower = str(value or "").strip().lower()
    return lower if lower in ALLOWED_INPUT_TYPES else "text"  # type: ignore[return-value]


def infer_type_from_name(name: str) -> InputType | None:
    """Map an uploaded file name to an input type, or None if unsupported."""
    return _SUFFIX_TYPES.get(Path(name).suffix.lower())


def load_upload(path: Path) -> DataEntry:
    """Read a local file as an uploaded data entry.

    Raises:
        ValueError: if the file type is not one the agents accept
    """
    input_type = infer_type_from_name(path.name)
    if input_type is None:
        raise ValueError(f"Unsupported data file type: {path.name}")
    return DataEntry(
        id=unique_id("upload"),
        title=path.name,
        type=input_type,
        content=path.read_text(encoding="utf-8", errors="replace"),
        source=DataSource.UPLOAD,
    )


def collect_data_entries(
    suggested: Iterable[InputSuggestion],
    selected_ids: Iterable[str],
    uploads: Iterable[DataEntry] = (),
    notes: str = "",
) -> list[DataEntry]:
    """Gather selected suggestions, uploads and free-form notes, in that order."""
    selected = set(selected_ids)
    entries = [
        DataEntry(
            id=item.id,
            title=item.title,
            type=item.type,
            content=item.content,
            source=DataSource.SUGGESTED,
        )
        for item in suggested
        if item.id in selected
    ]
    entries.extend(upload.model_copy(update={"source": DataSource.UPLOAD}) for upload in uploads)
    if notes.strip():
        entries.append(
            DataEntry(
                id=unique_id("note"),
                title="User Notes",
                type="text",
                content=notes.strip(),
                source=DataSource.NOTES,
            )
        )
    return entries


def format_data_entries(entries: list[DataEntry], limit: int = 600) -> str:
    """Render data entries as the `Input Data` block of agent prompts."""
    if not entries:
        return NO_DATA_MESSAGE
    return "\n\n".join(
        f"{index}. {entry.title} [{entry.type}]\n{truncate(entry.content, limit)}"
        for index, entry in enumerate(entries, 1)
    )
