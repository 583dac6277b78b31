"""Per-run summary returned by every batch sweep."""

from dataclasses import dataclass, field


@dataclass
class SweepReport:
    """
    Counts for one sweep over one box.

    One item failing never aborts the sweep; it is counted in `failed`
    and its error kept in `errors` (truncated to keep the report small).
    """
    job: str
    box_id: str
    processed: int = 0
    changed: int = 0
    alerts_created: int = 0
    deferred: int = 0
    skipped: int = 0
    failed: int = 0
    events_published: int = 0
    errors: list[str] = field(default_factory=list)

    def record_failure(self, item_id: str, error: Exception) -> None:
        self.failed += 1
        if len(self.errors) < 20:
            self.errors.append(f"{item_id}: {type(error).__name__}: {error}")

    def as_log_fields(self) -> dict:
        return {
            "job": self.job,
            "box_id": self.box_id,
            "processed": self.processed,
            "changed": self.changed,
            "alerts_created": self.alerts_created,
            "deferred": self.deferred,
            "skipped": self.skipped,
            "failed": self.failed,
            "events_published": self.events_published,
        }
