"""Time-windowed recurring tasks."""

from extracts.services.schedule.gate import (
    InMemoryScheduleStore,
    ScheduleGate,
    is_within_interval,
    parse_hhmm,
)

__all__ = ["InMemoryScheduleStore", "ScheduleGate", "is_within_interval", "parse_hhmm"]
