"""Helpers for capped, human-readable error samples"""

from typing import Any, Dict, Iterable, List, Optional


def error_sample(messages: Iterable[str], limit: int = 3) -> str:
    """
    Join the first ``limit`` messages with "; ", appending " ..." when more exist

    Args:
        messages: Error messages in the order they occurred
        limit: Maximum number of messages to include

    Returns:
        Sample string (empty when there are no messages)
    """
    messages = list(messages)
    sample = "; ".join(messages[:limit])
    if len(messages) > limit:
        sample += " ..."
    return sample


def _row_message(entry: Dict[str, Any]) -> str:
    prefix = f"Row {entry['row']}: "
    message = entry["errors"][0] if entry.get("errors") else "Unknown error"
    # Validation messages already carry the row prefix
    return message if message.startswith(prefix) else prefix + message


def summarize_row_errors(row_errors: List[Dict[str, Any]], limit: int = 3) -> Optional[str]:
    """
    Build the job error summary from per-row error entries

    Each entry is a dict with "row" and "errors" keys. Returns None when
    there is nothing to report.
    """
    if not row_errors:
        return None
    sample = error_sample((_row_message(entry) for entry in row_errors), limit=limit)
    return f"{len(row_errors)} row errors. Sample: {sample}"
