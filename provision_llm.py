from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys

from app.auto_start import AutoStartOptions
from app.container import build_container
from app.settings import build_settings
from config.compute_config import ComputeConfig
from llm.errors import AutoStartFailed, DownloadCancelled, LlmSetupError
from services.progress import LoggingProgressSink

logger = logging.getLogger("provision_llm")


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


def _compute_from_args(args) -> ComputeConfig:
    return ComputeConfig.from_strings(args.compute, args.backend, args.cuda, args.gpu_layers)


def _add_compute_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--compute", default="cpu", help="cpu | gpu | hybrid")
    p.add_argument("--backend", default=None, help="cuda | metal | vulkan")
    p.add_argument("--cuda", default=None, help="12.4 | 13.1")
    p.add_argument("--gpu-layers", type=int, default=None)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Provision and run the built-in llama-server.")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("probe", help="Print the hardware profile")

    p = sub.add_parser("recommend", help="Recommend a model tier and compute mode")
    p.add_argument("--tier", default=None)
    p.add_argument("--prefer", default=None, help="cpu | gpu | hybrid")
    p.add_argument("--cuda", default=None)

    p = sub.add_parser("status", help="Runtime and model installation status")
    p.add_argument("--model", default=None)
    _add_compute_args(p)

    p = sub.add_parser("install", help="Install the runtime and a model without starting them")
    p.add_argument("--model", default=None)
    p.add_argument("--no-download", action="store_true")
    _add_compute_args(p)

    p = sub.add_parser("start", help="Auto start the best model and keep it running until Ctrl-C")
    p.add_argument("--tier", default=None)
    p.add_argument("--prefer", default=None, help="cpu | gpu | hybrid")
    p.add_argument("--cuda", default=None)
    p.add_argument("--no-download", action="store_true")

    sub.add_parser("models", help="List installed models")

    p = sub.add_parser("benchmark", help="Measure generation speed and suggest a tier")
    _add_compute_args(p)

    return parser


async def _serve_until_interrupted(service, args, sink) -> int:
    options = AutoStartOptions(
        preferred_tier=args.tier,
        preferred_compute=args.prefer,
        cuda_version=args.cuda,
        allow_download=not args.no_download,
    )
    result = await service.auto_start(options, sink=sink)
    logger.info(
        "Serving %s (%s/%s) at %s. Press Ctrl-C to stop.",
        result.chosen_model_id,
        result.chosen_compute_mode.value,
        result.chosen_gpu_backend.value,
        result.status.base_url,
    )
    try:
        while True:
            await asyncio.sleep(1.0)
            if not service.supervisor.is_running():
                logger.error("llama-server exited unexpectedly")
                return 1
    finally:
        await service.stop()


async def run(args, deps) -> int:
    service = deps["llm"]
    sink = LoggingProgressSink()

    if args.command == "probe":
        _print_json(service.probe().to_dict())
    elif args.command == "recommend":
        rec = service.recommend(args.tier, args.prefer, args.cuda)
        _print_json({
            "tier": rec.tier,
            "modelId": rec.model_id,
            "computeMode": rec.compute_mode.value,
            "gpuBackend": rec.gpu_backend.value,
            "cudaVersion": rec.cuda_version.value,
            "probe": rec.probe.to_dict(),
        })
    elif args.command == "status":
        config = _compute_from_args(args)
        _print_json({
            "server": service.status(args.model, config).to_dict(),
            "runtime": service.runtime_status(config).to_dict(),
            "bundledOnly": service.is_bundled_only(),
        })
    elif args.command == "install":
        status = await service.install(args.model, _compute_from_args(args), not args.no_download, sink=sink)
        _print_json(status.to_dict())
    elif args.command == "start":
        return await _serve_until_interrupted(service, args, sink)
    elif args.command == "models":
        _print_json([{"modelId": m.model_id, "fileName": m.file_name, "size": m.size} for m in service.list_models()])
    elif args.command == "benchmark":
        res = await service.benchmark(_compute_from_args(args))
        _print_json({
            "tokensPerSecond": round(res.tokens_per_second, 2),
            "completionTokens": res.completion_tokens,
            "elapsedMs": res.elapsed_ms,
            "recommendedTier": res.recommended_tier,
            "recommendedModelId": res.recommended_model_id,
        })
    return 0


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    args = build_parser().parse_args(argv)

    # Build config and services
    app_cfg = build_settings()
    deps = build_container(app_cfg)

    try:
        return asyncio.run(run(args, deps))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
        deps["supervisor"].shutdown()
        return 130
    except DownloadCancelled:
        logger.warning("Download cancelled")
        return 130
    except AutoStartFailed as e:
        logger.error("%s", e)
        for line in e.attempts:
            logger.error("  %s", line)
        return 1
    except LlmSetupError as e:
        logger.error("%s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
