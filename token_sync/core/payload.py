"""
Upload payload construction.
"""

from typing import Any, Dict, Mapping, Optional

from .merge import split_totals_key
from .scheduler import format_iso, utc_now
from .tokens import RequiredTotals

PAYLOAD_VERSION = 1


def build_sync_payload(
    daily_totals: Mapping[str, RequiredTotals],
    generated_at: Optional[str] = None,
    device_id: Optional[str] = None,
    device_name: Optional[str] = None,
) -> Dict[str, Any]:
    """Serialize the daily totals ledger for upload.

    Totals are ordered by day, then model, whatever the order of
    `daily_totals`. Blank device fields are omitted.

    Args:
        daily_totals: Grand totals keyed by `day::model`
        generated_at: ISO timestamp; defaults to now
        device_id: Stable identifier of this install
        device_name: Human readable device name

    Returns:
        JSON-serializable payload dictionary
    """
    totals = []
    for key, tokens in daily_totals.items():
        day, model = split_totals_key(key)
        totals.append({"day": day, "model": model, "tokens": tokens.to_dict()})
    totals.sort(key=lambda entry: (entry["day"], entry["model"]))

    payload: Dict[str, Any] = {
        "version": PAYLOAD_VERSION,
        "generatedAt": generated_at or format_iso(utc_now()),
    }
    if device_id and device_id.strip():
        payload["deviceId"] = device_id.strip()
    if device_name and device_name.strip():
        payload["deviceName"] = device_name.strip()
    payload["totals"] = totals
    return payload
