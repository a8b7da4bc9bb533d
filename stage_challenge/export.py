"""Excel export of stage winners for a challenge."""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from os import PathLike
from pathlib import Path
from typing import Dict, List, Sequence, TYPE_CHECKING

import pandas as pd
from openpyxl.styles import Border, Font, PatternFill, Side
from openpyxl.worksheet.worksheet import Worksheet

from .config import (
    EXCEL_AUTOSIZE_COLUMNS,
    EXCEL_AUTOSIZE_MAX_ROWS,
    EXCEL_AUTOSIZE_MAX_WIDTH,
    EXCEL_AUTOSIZE_MIN_WIDTH,
    EXCEL_AUTOSIZE_PADDING,
    EXPORT_OVERALL_SHEET,
    EXPORT_STAGE_COLUMN_ORDER,
)
from .errors import ChallengeNotFound
from .models import StageResult
from .utils import format_time

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from .db import ChallengeStore

LOGGER = logging.getLogger(__name__)

MAX_SHEET_NAME_LEN = 31
EXCEL_DATETIME_FORMAT = "yyyy-mm-dd hh:mm:ss"
EMPTY_SHEET = "Summary"

HEADER_FONT = Font(bold=True)
HEADER_FILL = PatternFill(patternType="solid", fgColor="FFFF40FF")
HEADER_BORDER = Border(
    left=Side(style="thin", color="000000"),
    right=Side(style="thin", color="000000"),
    top=Side(style="thin", color="000000"),
    bottom=Side(style="thin", color="000000"),
)

PathInput = str | Path | PathLike[str]


def build_stage_frames(
    results: Sequence[StageResult],
    stages: Sequence[int],
    excluded: set[str] | None = None,
) -> Dict[int, pd.DataFrame]:
    """Return one ranked DataFrame per stage number.

    Rows are ordered by best time, ties broken by the earlier completion.
    """

    excluded = excluded or set()
    frames: Dict[int, pd.DataFrame] = {}
    for stage in stages:
        stage_results = [
            r for r in results if r.stage_number == stage and r.user_id not in excluded
        ]
        stage_results.sort(key=_ranking_key)
        rows = [
            {
                "Rank": rank,
                "User": result.user_id,
                "Best Time (sec)": result.best_time_seconds,
                "Best Time (h:mm:ss)": format_time(result.best_time_seconds),
                "Completed At": _excel_datetime(result.completed_at),
            }
            for rank, result in enumerate(stage_results, start=1)
        ]
        frames[stage] = pd.DataFrame(rows, columns=EXPORT_STAGE_COLUMN_ORDER)
    return frames


def build_overall_frame(
    results: Sequence[StageResult],
    stages: Sequence[int],
    excluded: set[str] | None = None,
) -> pd.DataFrame:
    """Rank users that hold a result on every stage by their summed best times."""

    columns = ["Rank", "User", "Stages", "Total Time (sec)", "Total Time (h:mm:ss)"]
    excluded = excluded or set()
    required = set(stages)
    per_user: Dict[str, Dict[int, int]] = {}
    for result in results:
        if result.user_id in excluded or result.stage_number not in required:
            continue
        per_user.setdefault(result.user_id, {})[result.stage_number] = result.best_time_seconds
    finishers = [
        (user_id, sum(times.values()))
        for user_id, times in per_user.items()
        if required and set(times) == required
    ]
    finishers.sort(key=lambda item: (item[1], item[0]))
    rows = [
        {
            "Rank": rank,
            "User": user_id,
            "Stages": len(required),
            "Total Time (sec)": total,
            "Total Time (h:mm:ss)": format_time(total),
        }
        for rank, (user_id, total) in enumerate(finishers, start=1)
    ]
    return pd.DataFrame(rows, columns=columns)


def export_stage_results(
    store: "ChallengeStore",
    challenge_id: int,
    output_path: PathInput,
) -> List[str]:
    """Write the per-stage and overall rankings workbook; return the sheet names."""

    challenge = store.get_challenge(challenge_id)
    if challenge is None:
        raise ChallengeNotFound(f"Challenge {challenge_id} does not exist")
    results = store.list_stage_results(challenge_id)
    excluded = {p.user_id for p in store.list_participants(challenge_id) if p.excluded}
    stages = [route.stage_number for route in store.list_routes(challenge_id)]
    if not stages:
        stages = sorted({result.stage_number for result in results})

    filepath = str(Path(output_path))
    used_sheet_names: set[str] = set()
    written: List[str] = []
    with pd.ExcelWriter(
        filepath, engine="openpyxl", datetime_format=EXCEL_DATETIME_FORMAT
    ) as writer:
        if not results:
            pd.DataFrame({"Message": ["No results to display."]}).to_excel(
                writer, sheet_name=EMPTY_SHEET, index=False
            )
            _autosize(writer.sheets[EMPTY_SHEET])
            LOGGER.info("Challenge %s has no stage results; wrote empty workbook", challenge_id)
            return [EMPTY_SHEET]

        for stage, frame in build_stage_frames(results, stages, excluded).items():
            written.append(_write_sheet(writer, f"Stage {stage}", frame, used_sheet_names))
        overall = build_overall_frame(results, stages, excluded)
        written.append(_write_sheet(writer, EXPORT_OVERALL_SHEET, overall, used_sheet_names))

    LOGGER.info(
        "Exported %d stage results for challenge %s to %s",
        len(results),
        challenge_id,
        filepath,
    )
    return written


def _write_sheet(
    writer: pd.ExcelWriter,
    base_name: str,
    frame: pd.DataFrame,
    used_sheet_names: set[str],
) -> str:
    sheet_name = _unique_sheet_name(base_name, used_sheet_names)
    frame.to_excel(writer, sheet_name=sheet_name, index=False)
    ws = writer.sheets.get(sheet_name)
    if ws is None:
        return sheet_name
    _style_header_row(ws, 1, len(frame.columns))
    _autosize(ws)
    LOGGER.debug("Wrote sheet %s rows=%d", sheet_name, len(frame))
    return sheet_name


def _ranking_key(result: StageResult):
    completed = result.completed_at or datetime.max.replace(tzinfo=timezone.utc)
    return (result.best_time_seconds, completed, result.user_id)


def _excel_datetime(value: datetime | None) -> datetime | None:
    # Excel has no timezone support; write UTC wall-clock time.
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _unique_sheet_name(base: str, used: set[str]) -> str:
    base = base[:MAX_SHEET_NAME_LEN]
    name = base
    i = 1
    while name in used:
        suffix = f"_{i}"
        name = base[: MAX_SHEET_NAME_LEN - len(suffix)] + suffix
        i += 1
    used.add(name)
    return name


def _style_header_row(ws: Worksheet, row_idx: int, max_col: int | None = None) -> None:
    if row_idx <= 0:
        return
    max_col = max_col or ws.max_column
    for col_idx in range(1, max_col + 1):
        cell = ws.cell(row=row_idx, column=col_idx)
        cell.font = HEADER_FONT
        cell.fill = HEADER_FILL
        cell.border = HEADER_BORDER


def _autosize(ws: Worksheet) -> None:
    if not EXCEL_AUTOSIZE_COLUMNS:
        return
    try:
        if ws.max_row > EXCEL_AUTOSIZE_MAX_ROWS:
            return
        for col_cells in ws.columns:
            max_len = 0
            col_letter = getattr(col_cells[0], "column_letter", None)
            for cell in col_cells:
                if cell.value is None:
                    continue
                max_len = max(max_len, len(str(cell.value)))
            width = min(
                EXCEL_AUTOSIZE_MAX_WIDTH,
                max(EXCEL_AUTOSIZE_MIN_WIDTH, max_len + EXCEL_AUTOSIZE_PADDING),
            )
            if col_letter:
                ws.column_dimensions[col_letter].width = width
    except Exception as exc:  # pragma: no cover - autosize is best-effort
        LOGGER.debug("Autosize failed for sheet %s: %s", getattr(ws, "title", "?"), exc)


__all__ = ["build_overall_frame", "build_stage_frames", "export_stage_results"]
