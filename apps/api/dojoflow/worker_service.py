"""HTTP service entrypoint for the background worker (container platforms need a port)."""

from __future__ import annotations

import os

from fastapi import FastAPI

from dojoflow.worker import build_jobs

app = FastAPI()
_jobs = build_jobs()


@app.get("/health")
def health() -> dict:
    return {"status": "ok", "jobs_running": all(job.running for job in _jobs)}


@app.get("/scheduler/status")
def scheduler_status() -> list[dict]:
    return [job.status().to_dict() for job in _jobs]


@app.on_event("startup")
async def _startup() -> None:
    for job in _jobs:
        job.start()


@app.on_event("shutdown")
async def _shutdown() -> None:
    for job in _jobs:
        await job.stop()


def main() -> None:
    import uvicorn

    port = int(os.getenv("PORT", "8080"))
    host = os.getenv("HOST", "0.0.0.0")
    # nosec B104 - container platforms require binding to all interfaces.
    uvicorn.run("dojoflow.worker_service:app", host=host, port=port)


if __name__ == "__main__":
    main()
