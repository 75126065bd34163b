"""
Prediction CSV Export
Renders the ledger as one row per cycle for spreadsheet analysis.
"""
import logging
from collections import OrderedDict
from datetime import datetime
from typing import Dict, List, Optional, Sequence
from zoneinfo import ZoneInfo

import pandas as pd

from models.schemas import PredictionRecord, mmol_to_mgdl

logger = logging.getLogger(__name__)


LINE_TERMINATOR = "\r\n"


def _format_timestamp(ts: Optional[datetime], tz: ZoneInfo) -> str:
    return ts.astimezone(tz).isoformat(timespec="seconds") if ts else ""


def _format_mmol(value: Optional[float]) -> str:
    return f"{value:.2f}" if value is not None else ""


def _format_mgdl(value: Optional[float]) -> str:
    return str(int(round(value))) if value is not None else ""


def _minutes_since(event: Optional[datetime], at: datetime) -> str:
    if event is None:
        return ""
    return str(int((at - event).total_seconds() // 60))


def group_cycles(records: Sequence[PredictionRecord]) -> List[List[PredictionRecord]]:
    """Group records by cycle id, ordered chronologically."""
    cycles: Dict[str, List[PredictionRecord]] = OrderedDict()
    for record in records:
        cycles.setdefault(record.cycleId, []).append(record)
    return sorted(
        cycles.values(),
        key=lambda group: (group[0].timestamp, min(r.sequenceCount for r in group))
    )


def csv_header(model_indices: Sequence[int], tz_label: str = "UTC", horizon_minutes: int = 20) -> List[str]:
    header = [f"Timestamp_{tz_label}", "Prediction_Count", "Current_BG_mmol", "Current_BG_mgdl"]
    for index in model_indices:
        header += [f"M{index}_Pred_{horizon_minutes}min_mmol", f"M{index}_Pred_{horizon_minutes}min_mgdl"]
    header += [
        f"Avg_Pred_{horizon_minutes}min_mmol",
        f"Avg_Pred_{horizon_minutes}min_mgdl",
        "Model_Count",
        "Actual_BG_mmol",
        "Actual_BG_mgdl",
        "Actual_BG_Timestamp",
        "Last_Carb_Entry_Timestamp",
        "Time_Since_Last_Carb_Minutes",
        "Last_Insulin_Entry_Timestamp",
        "Time_Since_Last_Insulin_Minutes",
    ]
    return header


def export_predictions_csv(
    records: Sequence[PredictionRecord],
    timezone_name: str = "UTC",
    horizon_minutes: int = 20
) -> str:
    """
    Render records as CSV text, one row per cycle.

    Prediction_Count is renumbered 1..N in chronological order for display;
    the records themselves are not modified. Absent values are empty cells.

    Args:
        records: Ledger snapshot (any order)
        timezone_name: IANA zone for timestamps (fixed UTC offset in output)
        horizon_minutes: Forecast horizon used in column names

    Returns:
        CSV text with CRLF line endings
    """
    tz = ZoneInfo(timezone_name)
    tz_label = timezone_name.replace("/", "_")
    model_indices = sorted({r.modelIndex for r in records if not r.isAggregate})
    header = csv_header(model_indices, tz_label, horizon_minutes)

    rows = []
    for display_count, cycle in enumerate(group_cycles(records), start=1):
        per_model = {r.modelIndex: r for r in cycle if not r.isAggregate}
        aggregate = next((r for r in cycle if r.isAggregate), None)
        first = aggregate or cycle[0]

        if aggregate is not None:
            avg_mmol, model_count = aggregate.predictedValueMmol, aggregate.modelCount
        else:
            values = [r.predictedValueMmol for r in per_model.values()]
            avg_mmol, model_count = sum(values) / len(values), len(values)

        actual = next((r for r in [aggregate, *cycle] if r is not None and r.has_actual), None)

        row = [
            _format_timestamp(first.timestamp, tz),
            str(display_count),
            _format_mmol(first.currentBgMmol),
            _format_mgdl(first.currentBgMgdl),
        ]
        for index in model_indices:
            record = per_model.get(index)
            row += [
                _format_mmol(record.predictedValueMmol if record else None),
                _format_mgdl(record.predictedValueMgdl if record else None),
            ]
        row += [
            _format_mmol(avg_mmol),
            _format_mgdl(mmol_to_mgdl(avg_mmol)),
            str(model_count),
            _format_mmol(actual.actualBgMmol if actual else None),
            _format_mgdl(actual.actualBgMgdl if actual else None),
            _format_timestamp(actual.actualBgTimestamp if actual else None, tz),
            _format_timestamp(first.lastCarbTimestamp, tz),
            _minutes_since(first.lastCarbTimestamp, first.timestamp),
            _format_timestamp(first.lastInsulinTimestamp, tz),
            _minutes_since(first.lastInsulinTimestamp, first.timestamp),
        ]
        rows.append(row)

    logger.info(f"Exported {len(rows)} prediction cycles to CSV")
    frame = pd.DataFrame(rows, columns=header, dtype=str)
    return frame.to_csv(index=False, lineterminator=LINE_TERMINATOR)
