"""One-off script for debugging a text-to-image task against the real provider."""

import time
from pathlib import Path

from config.settings import load_config
from modules.quota.ledgers import Identity
from modules.services.generation_service import GenerationService
from modules.ui.callbacks import build_callbacks
from modules.utils.logging import setup_logging


def main() -> None:
    # 1. 准备真实配置与服务对象
    config = load_config()
    setup_logging(config)
    service = GenerationService.from_config(config)
    callbacks = build_callbacks(config, service=service)

    # 2. 提交任务（访客身份即可，免费额度 5 次）
    body = {
        "prompt": "夕阳下的未来城市街景，穿红色和服的少女，霓虹灯闪烁",
        "model": config.default_model_id,
        "mode": "text2img",
        "guestId": "debug-guest",
    }
    started = callbacks["on_generate"](body)
    print("提交结果:", started)
    if not started.get("success"):
        return

    # 3. 轮询直到完成
    task_id = started["taskId"]
    status: dict = {}
    for attempt in range(config.max_poll_attempts):
        status = callbacks["on_status"](task_id, guest_id="debug-guest")
        print(f"[{attempt + 1}] 状态:", status.get("status"), status.get("error", ""))
        if status.get("status") in ("SUCCEED", "FAILED") or not status.get("success"):
            break
        time.sleep(config.poll_interval_seconds)

    images = status.get("images") or []
    if not images:
        print("未返回图像，请检查状态信息。")
        return

    record = service.list_history(Identity.guest("debug-guest"))[0]
    for index, image in enumerate(record.images):
        out_path = Path(f"debug_generate_output_{index}.png")
        out_path.write_bytes(service.materializer.load_bytes(image))
        print("图像已保存:", out_path.resolve())


if __name__ == "__main__":
    main()
