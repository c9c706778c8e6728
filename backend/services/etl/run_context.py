"""
Sync Run Context

Unified context object for one GIB sync run.
Prevents "threading parameters everywhere" and keeps the pipeline consistent.

Usage:
    ctx = create_run_context(triggered_by="cron")
    ctx.mark_stage("download")
    ctx.file_fingerprints["pk_list.zip"] = compute_file_sha256(path)

    # Non-fatal problems downgrade the run to partial
    ctx.add_warning("Archive generation failed for e_invoice_gib_users: ...")

    print(ctx.summary())
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional
from uuid import uuid4


@dataclass
class RunContext:
    """
    Shared context across all sync stages.

    Accumulates per-stage counters; warnings collected here decide whether
    an applied run ends as success or partial.
    """

    run_id: str = field(default_factory=lambda: uuid4().hex)
    triggered_by: str = "manual"

    started_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None

    # download | extract | apply | archive | metadata | completed | failed
    stage: str = "created"

    # zip file name -> sha256
    file_fingerprints: Dict[str, str] = field(default_factory=dict)

    # origin list -> rows staged / records rejected by the parser
    rows_staged: Dict[str, int] = field(default_factory=dict)
    parse_failures: Dict[str, int] = field(default_factory=dict)

    warnings: List[str] = field(default_factory=list)

    error_message: Optional[str] = None
    error_stage: Optional[str] = None

    def mark_stage(self, stage: str):
        """Update status to current stage."""
        self.stage = stage

    def record_staged(self, origin: str, rows: int, failures: int = 0):
        self.rows_staged[origin] = rows
        self.parse_failures[origin] = failures

    def add_warning(self, message: str):
        """Add a non-fatal warning (run becomes partial)."""
        self.warnings.append(message)

    @property
    def has_warnings(self) -> bool:
        return len(self.warnings) > 0

    def joined_warnings(self, separator: str = " | ") -> Optional[str]:
        return separator.join(self.warnings) if self.warnings else None

    def fail(self, message: str):
        """Mark the run as failed at its current stage."""
        self.error_stage = self.stage
        self.error_message = message
        self.stage = 'failed'
        self.completed_at = datetime.utcnow()

    def complete(self):
        """Mark the run as completed."""
        self.stage = 'completed'
        self.completed_at = datetime.utcnow()

    @property
    def elapsed_seconds(self) -> float:
        return ((self.completed_at or datetime.utcnow()) - self.started_at).total_seconds()

    def summary(self) -> str:
        """Get human-readable summary of the run."""
        lines = [
            f"Run ID: {self.run_id[:8]}...",
            f"Stage: {self.stage}",
            f"Files: {len(self.file_fingerprints)}",
        ]
        for origin, rows in sorted(self.rows_staged.items()):
            lines.append(f"Staged {origin}: {rows:,} rows ({self.parse_failures.get(origin, 0)} rejected)")
        lines.append(f"Elapsed: {self.elapsed_seconds:.1f}s")

        if self.error_message:
            lines.append(f"Error: {self.error_stage}: {self.error_message}")
        if self.warnings:
            lines.append(f"Warnings: {len(self.warnings)}")
        return '\n'.join(lines)


def create_run_context(triggered_by: str = "manual") -> RunContext:
    """
    Factory function to create a new RunContext.

    Args:
        triggered_by: Who/what triggered the run ('manual', 'cron', 'api')
    """
    return RunContext(triggered_by=triggered_by)
