"""One-off script for debugging outpainting end to end."""

from pathlib import Path

from PIL import Image

from config.settings import load_config
from modules.pipelines.outpaint import (
    CompositeBuilder,
    OutpaintRequest,
    align_offset,
    canvas_size_for_ratio,
    fit_scale,
)
from modules.pipelines.runner import GenerationRunner
from modules.quota.ledgers import Identity
from modules.services.generation_service import GenerationService
from modules.utils.logging import setup_logging


def main() -> None:
    # 1. 准备真实配置与服务对象
    config = load_config()
    setup_logging(config)
    service = GenerationService.from_config(config)
    runner = GenerationRunner(
        service,
        interval=config.poll_interval_seconds,
        max_attempts=config.max_poll_attempts,
    )

    # 2. 准备测试输入（请按需替换）
    source_path = Path("tests/assets/debug_input.png")
    if not source_path.exists():
        raise FileNotFoundError(f"缺少原图: {source_path}")
    source = Image.open(source_path)
    source.load()

    canvas = canvas_size_for_ratio("16:9")
    scale = fit_scale(source.size, canvas)
    offset = align_offset(source.size, canvas, "left", "middle", scale)
    composite = CompositeBuilder().build(source, canvas, offset=offset, scale=scale)

    # 先保存合成图与蒙版，便于肉眼检查
    composite.composite_image.save("debug_outpaint_composite.jpg", quality=95)
    composite.mask_image.save("debug_outpaint_mask.png")

    request = OutpaintRequest(
        composite=composite,
        model_id=config.default_model_id,
        guidance="延续原图的风格与光线",
        aspect_ratio="16:9",
    )

    # 3. 提交并轮询，成功后原图会被贴回结果
    outcome = runner.run(request, Identity.guest("debug-guest"))
    print("状态:", outcome.report.state.value, outcome.report.error or "")
    for index, data in enumerate(outcome.outputs):
        out_path = Path(f"debug_outpaint_output_{index}.png")
        out_path.write_bytes(data)
        print("图像已保存:", out_path.resolve())


if __name__ == "__main__":
    main()
