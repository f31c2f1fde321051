"""Apply/destroy reporting."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

COMPLETED = 'completed'
FAILED = 'failed'
SKIPPED = 'skipped'


@dataclass
class ResourceResult:
    """Outcome of one change."""
    name: str
    action: str
    status: str  # 'completed', 'failed', 'skipped'
    message: str = ''
    duration: float = 0.0
    attempts: int = 0
    physical_id: Optional[str] = None


@dataclass
class ApplyReport:
    """Collects per-resource outcomes of an apply or destroy run."""
    stack: str
    operation: str = 'apply'
    report_dir: Optional[Path] = None
    results: list[ResourceResult] = field(default_factory=list)
    outputs: dict = field(default_factory=dict)
    rolled_back: list[str] = field(default_factory=list)
    cancelled: bool = False
    dry_run: bool = False
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    success: bool = False

    def start(self):
        """Mark run start."""
        self.started_at = datetime.now()

    def complete(self, name: str, action: str, message: str = '', duration: float = 0.0,
                 attempts: int = 1, physical_id: Optional[str] = None):
        """Record completed change."""
        self.results.append(ResourceResult(
            name=name, action=action, status=COMPLETED, message=message,
            duration=duration, attempts=attempts, physical_id=physical_id,
        ))

    def fail(self, name: str, action: str, message: str, duration: float = 0.0, attempts: int = 1):
        """Record failed change."""
        self.results.append(ResourceResult(
            name=name, action=action, status=FAILED, message=message,
            duration=duration, attempts=attempts,
        ))

    def skip(self, name: str, action: str, message: str):
        """Record skipped change."""
        self.results.append(ResourceResult(name=name, action=action, status=SKIPPED, message=message))

    def _names(self, status: str) -> list[str]:
        return [r.name for r in self.results if r.status == status]

    @property
    def completed(self) -> list[str]:
        return self._names(COMPLETED)

    @property
    def failed(self) -> list[str]:
        return self._names(FAILED)

    @property
    def skipped(self) -> list[str]:
        return self._names(SKIPPED)

    def get(self, name: str) -> ResourceResult:
        """Latest result for a resource.

        Raises:
            KeyError: If no result was recorded
        """
        for result in reversed(self.results):
            if result.name == name:
                return result
        raise KeyError(name)

    @property
    def duration(self) -> float:
        if self.finished_at and self.started_at:
            return (self.finished_at - self.started_at).total_seconds()
        return 0.0

    def finish(self, success: bool):
        """Finalize report and write files when a report directory is set."""
        self.finished_at = datetime.now()
        self.success = success
        if self.report_dir is not None:
            self.report_dir.mkdir(parents=True, exist_ok=True)
            self._write_json()
            self._write_markdown()

    def _write_json(self):
        """Write JSON report."""
        data = self.to_dict()
        data['started_at'] = self.started_at.isoformat() if self.started_at else None
        data['finished_at'] = self.finished_at.isoformat() if self.finished_at else None
        with open(self._report_filename('json'), 'w', encoding="utf-8") as f:
            json.dump(data, f, indent=2)

    def _write_markdown(self):
        """Write markdown report."""
        status = 'SUCCEEDED' if self.success else 'FAILED'
        lines = [
            f"# {self.operation} {self.stack}",
            "",
            f"**Status**: {status}",
            f"**Date**: {self.started_at.strftime('%Y-%m-%d %H:%M:%S') if self.started_at else 'N/A'}",
            f"**Duration**: {self.duration:.1f}s",
            "",
            "## Resources",
            "",
            "| Resource | Action | Status | Duration | Message |",
            "|----------|--------|--------|----------|---------|",
        ]

        for r in self.results:
            status_emoji = {COMPLETED: '✅', FAILED: '❌', SKIPPED: '⏭️'}.get(r.status, '❓')
            lines.append(f"| {r.name} | {r.action} | {status_emoji} {r.status} | {r.duration:.1f}s | {r.message} |")

        if self.rolled_back:
            lines.extend(["", f"Rolled back: {', '.join(self.rolled_back)}"])

        lines.extend(["", "---", f"Generated: {datetime.now().isoformat()}"])

        with open(self._report_filename('md'), 'w', encoding="utf-8") as f:
            f.write('\n'.join(lines))

    def _report_filename(self, ext: str) -> Path:
        """Report filename: <timestamp>.<stack>.<operation>.<status>.<ext>."""
        timestamp = self.started_at.strftime('%Y%m%d-%H%M%S') if self.started_at else 'unknown'
        status = 'succeeded' if self.success else 'failed'
        return self.report_dir / f"{timestamp}.{self.stack}.{self.operation}.{status}.{ext}"

    def to_dict(self) -> dict:
        """Return report as dictionary for JSON output."""
        result: dict[str, Any] = {
            'stack': self.stack,
            'operation': self.operation,
            'success': self.success,
            'duration_seconds': round(self.duration, 1),
            'completed': self.completed,
            'failed': self.failed,
            'skipped': self.skipped,
            'resources': [
                {
                    'name': r.name,
                    'action': r.action,
                    'status': r.status,
                    'message': r.message,
                    'duration': round(r.duration, 1),
                    'attempts': r.attempts,
                }
                for r in self.results
            ],
        }
        if self.outputs:
            result['outputs'] = self.outputs
        if self.rolled_back:
            result['rolled_back'] = self.rolled_back
        if self.cancelled:
            result['cancelled'] = True
        if self.dry_run:
            result['dry_run'] = True
        return result
