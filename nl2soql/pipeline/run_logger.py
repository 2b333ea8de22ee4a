from __future__ import annotations

import json
import logging
import os
import re
import shutil
import time
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_LOG_RETAIN = 20
PROMPT_PREVIEW_LIMIT = 4000


def _utc_timestamp() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def _status_icon(ok: bool) -> str:
    return "✓" if ok else "✗"


def _clip(text: str, width: int = 80) -> str:
    return text if len(text) <= width else text[: width - 3] + "..."


def format_timeline(question: str, timeline: List[Dict[str, Any]]) -> str:
    """Render recorded stages into a human-readable summary for log files."""
    lines: List[str] = ["=" * 80, "GROUNDING RUN SUMMARY", "=" * 80, f"Question: {question}", ""]

    for entry in timeline:
        stage = entry.get("stage", "unknown")
        ok = bool(entry.get("ok", True))
        lines.append(f"┌─ {stage.upper()}")
        if "duration_ms" in entry:
            lines.append(f"│  Duration: {entry['duration_ms']:.0f}ms")

        if stage == "context":
            objects = entry.get("objects", [])
            lines.append(f"│  Objects: {', '.join(objects[:5])}{'...' if len(objects) > 5 else ''}")
            if entry.get("cache_hit"):
                lines.append("│  Served from cache")
            for warning in entry.get("warnings", [])[:3]:
                lines.append(f"│    - Warning: {_clip(str(warning))}")
        elif stage == "fields":
            for table, fields in (entry.get("fields") or {}).items():
                lines.append(f"│  {table}: {len(fields)} field(s)")
            if entry.get("fallbacks"):
                lines.append(f"│  Core-only: {', '.join(entry['fallbacks'])}")
        elif stage == "draft":
            if entry.get("draft"):
                lines.append(f"│  Draft: {_clip(entry['draft'])}")
            if entry.get("error"):
                lines.append(f"│  Skipped: {entry['error']}")
        elif stage == "grounding":
            lines.append(f"│  Entities: {entry.get('grounded', 0)}/{entry.get('values', 0)} grounded")
        elif stage == "few_shot":
            lines.append(f"│  Examples: {', '.join(entry.get('examples', [])) or 'none'}")
        elif stage == "validation":
            for message in entry.get("messages", [])[:5]:
                lines.append(f"│    - {message.get('type')}: {_clip(message.get('message', ''), 70)}")
            if entry.get("soql"):
                lines.append("│  Query:")
                lines.extend(f"│    {q}" for q in entry["soql"].strip().split("\n"))

        lines.append(f"└─ {_status_icon(ok)} {stage} {'complete' if ok else 'degraded'}")
        lines.append("")

    lines.append("=" * 80)
    return "\n".join(lines)


class RunLogger:
    """
    Per-run trace artifacts for the grounding pipeline.
    - Writes metadata, a stage timeline and a summary as JSON.
    - Caps retained runs to avoid unbounded growth.
    """

    def __init__(self, base_dir: Optional[str] = None, retain: int = DEFAULT_LOG_RETAIN) -> None:
        env_dir = os.getenv("NL2SOQL_LOG_DIR")
        self.base_dir = Path(base_dir or env_dir or (Path.cwd() / "nl2soql-logs"))
        self.retain = max(1, retain)
        self.run_dir: Optional[Path] = None
        self.timeline: List[Dict[str, Any]] = []
        self.question = ""

    def start(self, question: str, params: Dict[str, Any]) -> Path:
        """Create a new run directory and capture initial metadata."""
        self.base_dir.mkdir(parents=True, exist_ok=True)
        stamp = time.strftime("%Y%m%d-%H%M%S")
        slug = re.sub(r"[^a-zA-Z0-9]+", "-", question.strip())[:36].strip("-") or "run"
        self.run_dir = self.base_dir / f"{stamp}-{slug}-{uuid.uuid4().hex[:6]}"
        self.run_dir.mkdir(parents=True, exist_ok=True)
        self.question = question
        self.timeline = []
        self._write_json(
            self.run_dir / "metadata.json",
            {"question": question, "params": params, "started_at": _utc_timestamp()},
        )
        return self.run_dir

    def log_stage(self, stage: str, payload: Optional[Dict[str, Any]] = None, ok: bool = True) -> None:
        entry = {"stage": stage, "ok": ok, "logged_at": _utc_timestamp()}
        entry.update(payload or {})
        self.timeline.append(entry)

    def log_prompt(self, prompt: str) -> None:
        if not self.run_dir:
            return
        self._write_json(self.run_dir / "prompt.json", {"prompt": prompt[:PROMPT_PREVIEW_LIMIT], "length": len(prompt)})

    def finalize(self, status: str, extra: Optional[Dict[str, Any]] = None) -> None:
        if not self.run_dir:
            return
        self._write_json(self.run_dir / "timeline.json", {"question": self.question, "timeline": self.timeline})
        try:
            (self.run_dir / "timeline.txt").write_text(format_timeline(self.question, self.timeline), encoding="utf-8")
        except Exception as exc:
            logger.debug("could not write timeline text: %s", exc)
        summary = {"status": status, "finished_at": _utc_timestamp()}
        if extra:
            summary.update(extra)
        self._write_json(self.run_dir / "summary.json", summary)
        self._prune_old_runs()

    def _write_json(self, path: Path, payload: Dict[str, Any]) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")
        except Exception as exc:
            # Logging must never block pipeline execution.
            logger.debug("could not write %s: %s", path, exc)

    def _prune_old_runs(self) -> None:
        try:
            if not self.base_dir.exists():
                return
            candidates = [p for p in self.base_dir.iterdir() if p.is_dir()]
            candidates.sort(key=lambda p: p.stat().st_mtime, reverse=True)
            for stale in candidates[self.retain :]:
                if self.run_dir and stale == self.run_dir:
                    continue
                shutil.rmtree(stale, ignore_errors=True)
        except Exception as exc:
            logger.debug("run pruning failed: %s", exc)


__all__ = ["RunLogger", "format_timeline", "DEFAULT_LOG_RETAIN"]
