"""Manual script to verify the ModelScope API key and async task flow."""

from __future__ import annotations

import os
import time

import requests
from config.settings import load_config

config = load_config()  # 会读取 .env 并写入 os.environ

BASE_URL = config.modelscope_base_url
API_KEY = config.modelscope_key
MODEL = os.getenv("MODELSCOPE_CHECK_MODEL", config.default_model_id)

if not API_KEY:
    print("[error] MODELSCOPE_API_KEY not set; check .env or environment variables.")
    raise SystemExit(1)

headers = {"Authorization": f"Bearer {API_KEY}", "Content-Type": "application/json"}

try:
    resp = requests.get(f"{BASE_URL}v1/models", headers=headers, timeout=30)
    print("Status:", resp.status_code)
    if not resp.ok:
        print(resp.text[:500])

    submit = requests.post(
        f"{BASE_URL}v1/images/generations",
        headers={**headers, "X-ModelScope-Async-Mode": "true"},
        json={"model": MODEL, "prompt": "一只坐在窗台上的橘猫，水彩风格"},
        timeout=30,
    )
    print("Submit status:", submit.status_code)
    if not submit.ok:
        print(submit.text[:500])
        raise SystemExit(1)

    task_id = submit.json().get("task_id")
    print("Task:", task_id)
    for attempt in range(config.max_poll_attempts):
        poll = requests.get(
            f"{BASE_URL}v1/tasks/{task_id}",
            headers={**headers, "X-ModelScope-Task-Type": "image_generation"},
            timeout=30,
        )
        data = poll.json()
        status = data.get("task_status")
        print(f"[{attempt + 1}]", status)
        if status == "SUCCEED":
            print("Images:", data.get("output_images"))
            break
        if status == "FAILED":
            print("Error:", data.get("error_message"))
            break
        time.sleep(config.poll_interval_seconds)
except Exception as exc:  # noqa: BLE001
    print("[error]", exc)
    raise
