"""Per-job log files: `<dir>/.zzap-report-<jobId>.log`."""

import os
from collections import deque
from datetime import datetime, timezone
from typing import List, Optional


def job_log_path(job_id: str, log_dir: str) -> str:
    return os.path.join(log_dir, f".zzap-report-{job_id}.log")


def job_log(job_id: str, line: str, log_dir: Optional[str] = None) -> None:
    """Print a tagged line and append it to the job's log file. Never raises."""
    print(f"[{job_id}] {line}")
    if not log_dir:
        return
    stamp = datetime.now(timezone.utc).isoformat(timespec='seconds')
    try:
        os.makedirs(log_dir, exist_ok=True)
        with open(job_log_path(job_id, log_dir), 'a', encoding='utf-8') as f:
            f.write(f"{stamp} {line}\n")
    except OSError as e:
        print(f"[{job_id}] Job log write failed: {str(e)[:100]}")


def read_job_log(job_id: str, log_dir: str, lines: int = 200) -> List[str]:
    try:
        with open(job_log_path(job_id, log_dir), 'r', encoding='utf-8') as f:
            return [line.rstrip("\n") for line in deque(f, maxlen=max(1, lines))]
    except FileNotFoundError:
        return []
