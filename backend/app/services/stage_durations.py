"""Derivation of per-stage durations from raw Pipedrive deal flow events."""

from datetime import timedelta
from typing import Any, Dict, List, Optional

from app.connectors.base import parse_pipedrive_timestamp
from app.schemas.deal_flow import StageDurationRecord

DEFAULT_PIPELINE_ID = 1


def is_stage_change(event: Dict[str, Any]) -> bool:
    data = event.get("data") or {}
    return event.get("object") == "dealChange" and data.get("field_key") == "stage_id"


def derive_stage_durations(
    flow_events: List[Dict[str, Any]],
    deal_id: int,
    pipeline_id: Optional[int] = None,
) -> List[StageDurationRecord]:
    """
    Turns a deal's flow events into one record per stage visit.

    Only stage changes are kept. Records are ordered by entry time (stable for equal
    timestamps) and each one is closed by the entry time of the next record of the deal;
    the last one stays open with no left_at or duration.
    """
    candidates = []
    for event in flow_events:
        if not is_stage_change(event):
            continue
        data = event["data"]
        stage_id = int(data["new_value"])
        formatted = (data.get("additional_data") or {}).get("new_value_formatted")
        candidates.append({
            "pipedrive_event_id": int(data["id"]),
            "deal_id": int(data.get("item_id") or deal_id),
            "pipeline_id": int(pipeline_id or DEFAULT_PIPELINE_ID),  # Events carry no pipeline
            "stage_id": stage_id,
            "stage_name": formatted or f"Stage {stage_id}",
            "entered_at": parse_pipedrive_timestamp(event["timestamp"]),
        })

    candidates.sort(key=lambda c: c["entered_at"])

    records = []
    for index, candidate in enumerate(candidates):
        left_at = candidates[index + 1]["entered_at"] if index + 1 < len(candidates) else None
        duration_seconds = (left_at - candidate["entered_at"]) // timedelta(seconds=1) if left_at else None
        records.append(StageDurationRecord(**candidate, left_at=left_at, duration_seconds=duration_seconds))
    return records
