from __future__ import annotations

import os
import random
import time

from fastapi import FastAPI, Request


NAME = os.getenv("SERVICE_NAME", "example")
FAIL_RATE = float(os.getenv("FAIL_RATE", "0"))  # 0..1

app = FastAPI(title=f"Example backend {NAME}")


@app.get("/health")
def health() -> dict[str, str]:
    # Optional fault injection to demo health-check restarts.
    if FAIL_RATE > 0 and random.random() < FAIL_RATE:
        time.sleep(3)
    return {"status": "healthy"}


@app.api_route("/{path:path}", methods=["GET", "POST"])
async def echo(path: str, request: Request) -> dict:
    body = await request.body()
    return {
        "service": NAME,
        "path": "/" + path,
        "forwarded_for": request.headers.get("x-forwarded-for"),
        "forwarded_host": request.headers.get("x-forwarded-host"),
        "body_bytes": len(body),
    }
