"""
Modal deployment.

- create_job: store a new job for already-parsed rows
- advance_job: one Advance call per invocation, bounded by the function timeout
- zzap_api: the FastAPI app
- main: local driver that creates a job from a file and advances it to the end

    modal run zzap_report/modal_app.py --input-file rows.xlsx --period-from 2025-07 --period-to 2025-08
    modal deploy zzap_report/modal_app.py
"""

import os
import time
import uuid

import modal

app = modal.App("zzap-report")

# Container image with browser and report dependencies
zzap_image = (
    modal.Image.debian_slim(python_version="3.11")
    .apt_install(
        "wget", "gnupg", "ca-certificates", "fonts-liberation",
        "libasound2", "libatk-bridge2.0-0", "libatk1.0-0", "libatspi2.0-0",
        "libcups2", "libdbus-1-3", "libdrm2", "libgbm1", "libgtk-3-0",
        "libnspr4", "libnss3", "libxcomposite1", "libxdamage1", "libxfixes3",
        "libxkbcommon0", "libxrandr2", "xdg-utils",
    )
    .pip_install(
        "playwright>=1.42.0",
        "playwright-stealth>=2.0.0",
        "httpx>=0.27.0",
        "beautifulsoup4>=4.12.0",
        "lxml>=4.9.0",
        "google-genai>=1.0.0",
        "pillow>=10.0.0",
        "boto3>=1.28.0",
        "openpyxl>=3.1.0",
        "fastapi[standard]>=0.115.0",
        "pydantic>=2.0.0",
        "python-dotenv>=1.0.0",
    )
    .run_commands(
        "playwright install chromium",
        "playwright install-deps chromium",
    )
    .env({"APP_WRITE_DIR": "/data", "JOB_STORE": "tinybird", "STORAGE_BACKEND": "r2"})
    .add_local_python_source("zzap_report")
)

# Holds the cookie file and job logs between invocations
zzap_volume = modal.Volume.from_name("zzap-report-data", create_if_missing=True)

ADVANCE_TIMEOUT = 600
DRIVER_POLL_SECONDS = 2.0


@app.function(
    image=zzap_image,
    timeout=ADVANCE_TIMEOUT,
    secrets=[modal.Secret.from_name("zzap")],
    volumes={"/data": zzap_volume},
)
async def advance_job(job_id: str, batch_size: int = None) -> dict:
    """Advance one slice. Job-level failures come back as {"ok": False, "error": ...}."""
    from zzap_report.services import build_services

    services = build_services()
    try:
        progress = await services.processor.advance(job_id, batch_size)
        return {"ok": True, **progress}
    except Exception as e:
        return {"ok": False, "error": (str(e) or e.__class__.__name__)[:500]}
    finally:
        await services.close()
        await zzap_volume.commit.aio()


@app.function(
    image=zzap_image,
    secrets=[modal.Secret.from_name("zzap")],
    volumes={"/data": zzap_volume},
)
async def create_job(rows: list, period_from: str, period_to: str, filename: str = None) -> str:
    from zzap_report.config import get_config
    from zzap_report.models import InputRow
    from zzap_report.store import get_job_store, new_job

    job_id = f"zz_{uuid.uuid4().hex[:12]}"
    store = get_job_store(get_config())
    await store.create(new_job(job_id, [InputRow.from_dict(r) for r in rows], period_from, period_to, filename))
    return job_id


@app.function(
    image=zzap_image,
    timeout=ADVANCE_TIMEOUT,
    secrets=[modal.Secret.from_name("zzap")],
    volumes={"/data": zzap_volume},
)
@modal.concurrent(max_inputs=20)
@modal.asgi_app(label="zzap-report-api")
def zzap_api():
    from zzap_report.api import create_app

    return create_app()


@app.local_entrypoint()
def main(input_file: str, period_from: str, period_to: str, batch_size: int = 5):
    """Create a job from a CSV/XLSX file and drive it to a terminal status."""
    from dotenv import load_dotenv

    from zzap_report.inputs import parse_rows
    from zzap_report.months import month_labels

    load_dotenv()
    with open(input_file, 'rb') as f:
        rows = parse_rows(f.read(), os.path.basename(input_file))
    if not rows:
        print("No rows!")
        return
    labels = month_labels(period_from, period_to)
    if not labels:
        print("Empty period!")
        return

    job_id = create_job.remote([r.to_dict() for r in rows], period_from, period_to, os.path.basename(input_file))

    print(f"\n{'='*60}")
    print(f"JOB {job_id}: {len(rows)} rows, {labels[0]} .. {labels[-1]}")
    print(f"{'='*60}")

    started = time.time()
    while True:
        result = advance_job.remote(job_id, batch_size)
        if not result.get("ok"):
            print(f"[{job_id}] FAILED: {result.get('error')}")
            return
        print(f"[{job_id}] {result['status']} {result['processed']}/{result['total']}")
        if result["status"] in ("done", "canceled", "failed", "error"):
            break
        time.sleep(DRIVER_POLL_SECONDS)

    print(f"\n{'='*60}")
    print(f"RESULT ({time.time() - started:.0f}s): {result['status']}")
    if result.get("resultFile"):
        print(f"Report: {result['resultFile']}")
    print(f"{'='*60}")
