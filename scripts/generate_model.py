#!/usr/bin/env python3
"""
Generate a model through a running forge3d API and wait for it to finish.

    python scripts/generate_model.py --user-id demo "a red sports car"

Signs a session token with the local JWT secret, starts a preview task and
polls its status with the task poller until the task is terminal.
"""
import argparse
import asyncio
import logging
import sys

import httpx

from forge3d.auth import create_access_token
from forge3d.exceptions import Forge3DException, UpstreamProviderError
from forge3d.generation.poller import TaskPoller

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

async def run(base_url: str, user_id: str, prompt: str, mode: str, preview_task_id: str = None) -> int:
    headers = {"Authorization": f"Bearer {create_access_token(user_id)}"}
    async with httpx.AsyncClient(base_url=base_url, headers=headers, timeout=60) as client:
        await client.post("/credits/initialize", json={})

        body = {"mode": mode, "prompt": prompt, "previewTaskId": preview_task_id}
        resp = await client.post("/generate", json=body)
        if resp.status_code != 200:
            logger.error(f"Generation failed ({resp.status_code}): {resp.text}")
            return 1
        started = resp.json()
        task_id = started["taskId"]
        logger.info(f"Task {task_id} started, {started['remainingCredits']} credits left")
        if started.get("warning"):
            logger.warning(started["warning"])

        async def fetch():
            try:
                status = await client.get("/generate", params={"taskId": task_id, "taskType": mode})
            except httpx.HTTPError as e:
                raise UpstreamProviderError("forge3d", str(e))
            if status.status_code != 200:
                raise UpstreamProviderError("forge3d", status.text, status_code=status.status_code)
            return status.json()

        try:
            payload = await TaskPoller(fetch, task_id=task_id).run()
        except Forge3DException as e:
            logger.error(e.message)
            return 1

    logger.info(f"Task {task_id} is {payload['modelStatus']}: {(payload.get('model_urls') or {}).get('glb')}")
    return 0 if payload["modelStatus"] == "COMPLETED" else 1

def main() -> int:
    parser = argparse.ArgumentParser(description="Generate a 3D model via the forge3d API")
    parser.add_argument("prompt", nargs="?", default=None)
    parser.add_argument("--user-id", required=True)
    parser.add_argument("--mode", choices=["preview", "refine"], default="preview")
    parser.add_argument("--preview-task-id")
    parser.add_argument("--base-url", default="http://localhost:8000")
    args = parser.parse_args()
    return asyncio.run(run(args.base_url, args.user_id, args.prompt, args.mode, args.preview_task_id))

if __name__ == "__main__":
    sys.exit(main())
