"""Application entry point: run one generation from the command line."""

from __future__ import annotations

import argparse
import logging
import uuid
from pathlib import Path
from typing import Optional, Sequence

from config.settings import load_config
from modules.pipelines.common import GenerationMode, ImageRef
from modules.pipelines.errors import GenerationError
from modules.pipelines.img2img import ImageToImageRequest
from modules.pipelines.outpaint import (
    CompositeBuilder,
    OutpaintRequest,
    align_offset,
    canvas_size_for_ratio,
    fit_scale,
)
from modules.pipelines.runner import GenerationRunner
from modules.pipelines.submitter import GenerationRequest
from modules.pipelines.text2img import TextToImageRequest
from modules.providers.registry import ProviderRegistry
from modules.quota.ledgers import Identity
from modules.services.generation_service import GenerationService
from modules.services.storage_service import LocalStorageService, build_storage
from modules.utils.image_utils import decode_image, extension_for, sniff_mime_type
from modules.utils.logging import setup_logging


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate images through a remote provider.")
    parser.add_argument("prompt", nargs="?", default="", help="Prompt (guidance text in outpaint mode)")
    parser.add_argument("--config", help="Path to a .env file")
    parser.add_argument("--model", help="Model id; defaults to DEFAULT_MODEL_ID")
    parser.add_argument(
        "--mode",
        choices=[mode.value for mode in GenerationMode],
        help="Generation mode; inferred from --image when omitted",
    )
    parser.add_argument("--image", action="append", default=[], type=Path, help="Reference or source image")
    parser.add_argument("--aspect-ratio", default=None)
    parser.add_argument("--resolution", default=None)
    parser.add_argument("--align", default="center,middle", help="Outpaint alignment, e.g. left,top")
    parser.add_argument("--mask", type=Path, default=None, help="Painted outpaint mask (black keeps, white regenerates)")
    parser.add_argument("--negative-prompt", default=None)
    parser.add_argument("--guest-id", default=None)
    parser.add_argument("--account-id", default=None)
    parser.add_argument("--output-dir", type=Path, default=None)
    parser.add_argument("--local-storage", type=Path, default=None, help="Store results on disk instead of S3")
    parser.add_argument("--list-models", action="store_true")
    parser.add_argument("--check", action="store_true", help="Check provider connectivity and exit")
    parser.add_argument("--verbose", action="store_true")
    return parser.parse_args(argv)


def _read_ref(path: Path) -> ImageRef:
    data = path.read_bytes()
    return ImageRef(data=data, mime_type=sniff_mime_type(data))


def build_request(args: argparse.Namespace, model_id: str) -> GenerationRequest:
    mode = args.mode or (GenerationMode.IMG2IMG.value if args.image else GenerationMode.TEXT2IMG.value)
    if mode == GenerationMode.OUTPAINT.value:
        if not args.image:
            raise SystemExit("扩图模式需要通过 --image 指定原图")
        source = decode_image(args.image[0].read_bytes())
        ratio_id = args.aspect_ratio or "1:1"
        canvas = canvas_size_for_ratio(ratio_id)
        scale = fit_scale(source.size, canvas)
        horizontal, _, vertical = args.align.partition(",")
        offset = align_offset(source.size, canvas, horizontal or "center", vertical or "middle", scale)
        mask = decode_image(args.mask.read_bytes()) if args.mask else None
        composite = CompositeBuilder().build(source, canvas, offset=offset, scale=scale, mask=mask)
        return OutpaintRequest(composite=composite, model_id=model_id, guidance=args.prompt, aspect_ratio=ratio_id)
    if mode == GenerationMode.IMG2IMG.value:
        return ImageToImageRequest(
            prompt=args.prompt,
            model_id=model_id,
            references=tuple(_read_ref(path) for path in args.image),
            aspect_ratio=args.aspect_ratio,
            resolution=args.resolution,
            negative_prompt=args.negative_prompt,
        )
    return TextToImageRequest(
        prompt=args.prompt,
        model_id=model_id,
        aspect_ratio=args.aspect_ratio,
        resolution=args.resolution,
        negative_prompt=args.negative_prompt,
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Load configuration, run one generation and save its outputs."""
    args = parse_args(argv)
    config = load_config(args.config)
    logger = setup_logging(config, logging.DEBUG if args.verbose else logging.INFO)

    if args.list_models:
        for item in config.available_models():
            print(f"{item['value']:<45} {item.get('provider', ''):<12} {item.get('label', '')}")
        return 0

    storage = LocalStorageService(args.local_storage) if args.local_storage else build_storage(config)
    registry = ProviderRegistry.from_config(config, storage)

    if args.check:
        for name, provider in registry.providers.items():
            status = provider.check_status()
            print(f"{name}: {status['message']}")
        return 0

    service = GenerationService.from_config(config, storage=storage, registry=registry)
    runner = GenerationRunner(
        service,
        interval=config.poll_interval_seconds,
        max_attempts=config.max_poll_attempts,
    )
    identity = (
        Identity.account(args.account_id)
        if args.account_id
        else Identity.guest(args.guest_id or f"cli-{uuid.uuid4().hex[:8]}")
    )

    try:
        request = build_request(args, args.model or config.default_model_id)
        outcome = runner.run(
            request,
            identity,
            on_update=lambda report: logger.info("Task %s: %s", report.task_id, report.state.value),
        )
        outcome.raise_for_status()
    except GenerationError as exc:
        print("生成失败:", exc)
        return 1

    output_dir = args.output_dir or config.output_dir
    output_dir.mkdir(parents=True, exist_ok=True)
    record_id = outcome.report.record.id if outcome.report.record else outcome.report.task_id
    for index, data in enumerate(outcome.outputs):
        path = output_dir / f"{record_id}_{index}.{extension_for(sniff_mime_type(data))}"
        path.write_bytes(data)
        print("图像已保存:", path.resolve())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
