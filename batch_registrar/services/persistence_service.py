"""
Persistence service for learned engine state and batch results.

Provides:
- StateStore: the strategy cache and resilience counters as one JSON file,
  written atomically under a file lock so concurrent runs never read a torn file
- ReportExporter: append-only per-item CSV rows via pandas, under a file lock
"""

import json
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Union

import pandas as pd
from filelock import FileLock

from ..models.item import BatchReport

logger = logging.getLogger(__name__)


class StateStore:
    """JSON store for the learned state of the engine"""

    def __init__(self, path: Union[str, Path], lock_timeout: float = 30.0):
        """
        Initialize the state store

        Args:
            path: JSON file holding the state
            lock_timeout: Seconds to wait for the file lock
        """
        self.path = Path(path)
        self.lock_file = self.path.with_name(self.path.name + ".lock")
        self.file_lock = FileLock(str(self.lock_file), timeout=lock_timeout)

    def load(self) -> Dict[str, Any]:
        """
        Load saved state

        Returns:
            The saved mapping, or an empty one on a cold start. A missing,
            empty or unreadable file is a cold start, never an error.
        """
        if not self.path.exists():
            logger.info(f"No saved state at {self.path}, starting cold")
            return {}

        try:
            with self.file_lock:
                raw = self.path.read_text(encoding='utf-8')
        except OSError as e:
            logger.warning(f"⚠️ Could not read state file {self.path}: {e}; starting cold")
            return {}

        if not raw.strip():
            return {}

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"⚠️ State file {self.path} is corrupt ({e}); starting cold")
            return {}

        if not isinstance(data, dict):
            logger.warning(f"⚠️ State file {self.path} does not hold an object; starting cold")
            return {}
        return data

    def save(self, data: Dict[str, Any]) -> bool:
        """Write state atomically; returns False if the write failed"""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with self.file_lock:
                fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=self.path.name, suffix=".tmp")
                try:
                    with os.fdopen(fd, 'w', encoding='utf-8') as f:
                        json.dump(data, f, ensure_ascii=False, indent=2)
                    os.replace(tmp_name, self.path)
                except BaseException:
                    if os.path.exists(tmp_name):
                        os.unlink(tmp_name)
                    raise
        except OSError as e:
            logger.error(f"❌ Failed to save state to {self.path}: {e}")
            return False

        logger.info(f"💾 Saved learned state to {self.path}")
        return True


class ReportExporter:
    """Appends batch results to a CSV file"""

    COLUMNS = ['timestamp', 'job_id', 'index', 'label', 'outcome', 'classification',
               'attempts', 'elapsed_ms', 'diagnostic', 'adapter']

    def __init__(self, csv_file: Union[str, Path]):
        self.csv_file = Path(csv_file)
        self.lock_file = self.csv_file.with_name(self.csv_file.name + ".lock")
        self.file_lock = FileLock(str(self.lock_file))

    def to_frame(self, report: BatchReport, adapter: Optional[str] = None) -> pd.DataFrame:
        timestamp = datetime.now().isoformat()
        records = [{
            'timestamp': timestamp,
            'job_id': report.job_id,
            'index': result.index,
            'label': result.item.label,
            'outcome': result.outcome.value,
            'classification': result.classification.value if result.classification else '',
            'attempts': result.attempts,
            'elapsed_ms': round(result.elapsed_ms, 1),
            'diagnostic': result.diagnostic,
            'adapter': adapter or '',
        } for result in report.results]
        return pd.DataFrame(records, columns=self.COLUMNS)

    def export(self, report: BatchReport, adapter: Optional[str] = None) -> int:
        """
        Append one row per item result

        Returns:
            Number of rows written
        """
        frame = self.to_frame(report, adapter)
        if frame.empty:
            return 0

        self.csv_file.parent.mkdir(parents=True, exist_ok=True)
        with self.file_lock:  # filelock handles cross-process locking
            frame.to_csv(
                self.csv_file,
                mode='a',  # append, never overwrite
                header=not self.csv_file.exists(),
                index=False,
                encoding='utf-8'
            )

        logger.info(f"💾 Saved {len(frame)} results to {self.csv_file}")
        return len(frame)

    def get_stats(self) -> Dict[str, Any]:
        """Get statistics about the exported file"""
        total_saved = 0
        if self.csv_file.exists():
            with self.file_lock:
                total_saved = len(pd.read_csv(self.csv_file))
        return {
            'file_path': str(self.csv_file),
            'total_saved': total_saved,
        }
