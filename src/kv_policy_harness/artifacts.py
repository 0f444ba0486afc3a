"""
Run context: shared run ID, artifact paths, report metadata and audit log.

Every harness step in one run writes under ``artifacts/<run_id>/`` so that
snapshots, compliance results, remediation plans and reports from the same
run sit side by side.
"""

import json
import shlex
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .settings import ARTIFACTS_DIR, FILE_TIMESTAMP_FORMAT, LOGS_SUBDIR, RUN_ID_FORMAT

MODE_PRODUCTION = "Production"
MODE_DEVTEST = "DevTest"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_run_id() -> str:
    return utc_now().strftime(RUN_ID_FORMAT)


class RunContext:
    """
    State shared by all steps of one harness run.

    Attributes:
        run_id: Identifier used for artifact naming and vault tagging
        mode: MODE_PRODUCTION or MODE_DEVTEST
        script_name: Name of the command being executed
        invocation: Command line as typed
        root: Artifact directory for this run
    """

    def __init__(self, run_id: Optional[str] = None, mode: str = MODE_PRODUCTION,
                 script_name: str = "kv-policy-harness",
                 invocation: Optional[List[str]] = None,
                 artifacts_dir: str = ARTIFACTS_DIR):
        self.run_id = run_id or new_run_id()
        self.mode = mode
        self.script_name = script_name
        argv = invocation if invocation is not None else sys.argv
        self.invocation = " ".join(shlex.quote(a) for a in argv)
        self.root = Path(artifacts_dir) / self.run_id
        self.current_state = "INITIALIZED"

    def directory(self, subdir: str) -> Path:
        path = self.root / subdir
        path.mkdir(parents=True, exist_ok=True)
        return path

    def artifact_path(self, subdir: str, kind: str, extension: str) -> Path:
        """Return a timestamped path such as ``reports/compliance-20250101-120000.html``."""
        stamp = utc_now().strftime(FILE_TIMESTAMP_FORMAT)
        return self.directory(subdir) / f"{kind}-{stamp}.{extension}"

    def metadata(self) -> Dict[str, str]:
        """Metadata stamped on every report (footer in HTML, block in JSON)."""
        return {
            'script': self.script_name,
            'invocation': self.invocation,
            'mode': self.mode,
            'timestamp': utc_now().isoformat(),
            'run_id': self.run_id,
        }

    def write_json(self, subdir: str, kind: str, data: Any) -> Path:
        path = self.artifact_path(subdir, kind, "json")
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, default=str)
        print(f"  ✓ Saved {kind} to: {path}")
        return path

    def log_event(self, event_type: str, data: Optional[Dict[str, Any]] = None) -> None:
        """
        Append a workflow event to the run's JSON Lines audit log.

        Log entries carry timestamp, run ID, event type, current state and
        event-specific data.
        """
        log_entry = {
            'timestamp': utc_now().isoformat(),
            'run_id': self.run_id,
            'event_type': event_type,
            'state': self.current_state,
            'data': data or {}
        }

        log_file = self.directory(LOGS_SUBDIR) / f"workflow_{self.run_id}.jsonl"

        try:
            with open(log_file, 'a', encoding='utf-8') as f:
                f.write(json.dumps(log_entry, default=str) + '\n')
        except IOError as e:
            print(f"⚠ Failed to write log entry: {e}")


def load_json(path) -> Any:
    with open(path, 'r', encoding='utf-8') as f:
        return json.load(f)


def latest_artifact(root: Path, subdir: str, kind: str) -> Optional[Path]:
    """Most recent ``<kind>-*.json`` under ``root/subdir``, or None."""
    directory = Path(root) / subdir
    if not directory.exists():
        return None
    candidates = sorted(directory.glob(f"{kind}-*.json"))
    return candidates[-1] if candidates else None
