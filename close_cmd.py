"""
Close command: finalize events the recorder left open.

An event is open while its Frames aggregate is NULL. Once its newest frame is older
than the minimum age, the aggregates are rebuilt from its frames and the event is
renamed with the recovered tag so closed-by-audit events can be told apart.
"""

import sqlite3
from dataclasses import dataclass
from typing import Dict, List, Optional

from common import RECOVER_TAG, RECOVER_TEXT, AuditConfig, record_finding
from confirm import ConfirmationPolicy, settle


@dataclass
class OpenEvent:
    """Closing aggregates computed from an open event's frames."""
    event_id: int
    prefix: str
    end_time: str
    length: int
    frames: int
    alarm_frames: int
    tot_score: int
    max_score: int

    @property
    def avg_score(self) -> int:
        if not self.alarm_frames:
            return 0
        return self.tot_score // self.alarm_frames

    @property
    def name(self) -> str:
        return f"{self.prefix}{self.event_id}{RECOVER_TAG}"


def find_open_events(conn: sqlite3.Connection, now: int, min_age: int) -> List[OpenEvent]:
    """Events with no Frames aggregate whose last frame is older than min_age."""
    rows = conn.execute(
        """
        SELECT E.Id AS Id,
               MAX(F.TimeStamp) AS EndTime,
               CAST(strftime('%s', MAX(F.TimeStamp)) AS INTEGER)
                   - CAST(strftime('%s', E.StartTime) AS INTEGER) AS Length,
               COUNT(F.Id) AS Frames,
               COUNT(CASE WHEN F.Score > 0 THEN 1 END) AS AlarmFrames,
               SUM(F.Score) AS TotScore,
               MAX(F.Score) AS MaxScore,
               M.EventPrefix AS Prefix
        FROM Events AS E
        LEFT JOIN Monitors AS M ON E.MonitorId = M.Id
        INNER JOIN Frames AS F ON E.Id = F.EventId
        WHERE E.Frames IS NULL
        GROUP BY E.Id
        HAVING CAST(strftime('%s', MAX(F.TimeStamp)) AS INTEGER) < ?
        ORDER BY E.Id
        """,
        (now - min_age,),
    ).fetchall()
    return [
        OpenEvent(
            event_id=int(row["Id"]),
            prefix=row["Prefix"] or "",
            end_time=row["EndTime"],
            length=_int_or_zero(row["Length"]),
            frames=int(row["Frames"]),
            alarm_frames=int(row["AlarmFrames"]),
            tot_score=_int_or_zero(row["TotScore"]),
            max_score=_int_or_zero(row["MaxScore"]),
        )
        for row in rows
    ]


def _int_or_zero(value: Optional[object]) -> int:
    return int(value) if value is not None else 0


def close_event(conn: sqlite3.Connection, event: OpenEvent) -> bool:
    """Write the closing aggregates and append the recovery note."""
    conn.execute(
        """
        UPDATE Events
        SET Name = ?, EndTime = ?, Length = ?, Frames = ?, AlarmFrames = ?,
            TotScore = ?, AvgScore = ?, MaxScore = ?,
            Notes = CASE WHEN Notes IS NULL OR Notes = '' THEN ? ELSE Notes || ' ' || ? END
        WHERE Id = ?
        """,
        (
            event.name,
            event.end_time,
            event.length,
            event.frames,
            event.alarm_frames,
            event.tot_score,
            event.avg_score,
            event.max_score,
            RECOVER_TEXT,
            RECOVER_TEXT,
            event.event_id,
        ),
    )
    conn.commit()
    return True


def close_open_events(
    conn: sqlite3.Connection,
    now: int,
    config: AuditConfig,
    policy: ConfirmationPolicy,
    stats: Dict[str, int],
    findings: List[Dict[str, object]],
) -> None:
    for event in find_open_events(conn, now, config.min_age):
        finding = record_finding(
            findings,
            "open_event",
            f"Found open event '{event.event_id}'",
            event=event.event_id,
            end_time=event.end_time,
            frames=event.frames,
        )
        stats["open_events"] += 1
        settle(
            policy,
            finding,
            stats,
            lambda: close_event(conn, event),
            prompt="close",
            action="closing",
            done="closed",
        )
