from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, TYPE_CHECKING
import logging

from app.hardware import HardwareProfile
from app.tier_selection import (
    clamp_gpu_layers_by_vram,
    compute_candidates,
    normalize_preferred_compute,
    parse_preferred_tier,
    start_tier,
)
from config.compute_config import DEFAULT_GPU_LAYERS, ComputeConfig, normalize_cuda_version
from config.llm_models import tier_to_model_id
from config.tier_config import TierConfig
from interfaces.model.selection import AutoStartResult
from llm.errors import AutoStartFailed, DownloadCancelled, LlmSetupError

if TYPE_CHECKING:
    import httpx

    from interfaces.progress.sink import ProgressSink
    from llm.supervisor import BuiltinLlmSupervisor

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class AutoStartOptions:
    preferred_tier: Optional[str] = None
    preferred_compute: Optional[str] = None
    cuda_version: Optional[str] = None
    gpu_layers: int = DEFAULT_GPU_LAYERS
    allow_download: bool = True


async def auto_start(
    supervisor: "BuiltinLlmSupervisor",
    profile: HardwareProfile,
    options: AutoStartOptions | None = None,
    *,
    tiers: TierConfig | None = None,
    sink: "ProgressSink | None" = None,
    client: "httpx.AsyncClient | None" = None,
) -> AutoStartResult:
    """
    Start the best model this machine can run, degrading on failure.

    Backends are tried best first. Within a backend the tier steps down one at
    a time to 0 before moving on. The first successful start wins.
    """
    options = options or AutoStartOptions()
    tiers = tiers or TierConfig()
    cuda_version = normalize_cuda_version(options.cuda_version)
    preferred_tier = parse_preferred_tier(options.preferred_tier)
    candidates = compute_candidates(profile, normalize_preferred_compute(options.preferred_compute), tiers)

    attempts: list[str] = []
    for mode, backend in candidates:
        if mode.uses_gpu:
            layers = clamp_gpu_layers_by_vram(options.gpu_layers, profile.vram_bytes, tiers)
        else:
            layers = 0
        config = ComputeConfig.from_strings(mode.value, backend.value, cuda_version.value, layers)

        tier = start_tier(profile, mode, preferred_tier, tiers)
        while tier >= 0:
            if supervisor.cancel.is_set():
                raise DownloadCancelled()
            model_id = tier_to_model_id(tier)
            logger.info("Auto start: trying %s on %s", model_id, config.describe())
            try:
                status = await supervisor.ensure_running(
                    config, model_id, options.allow_download, sink=sink, client=client,
                )
            except DownloadCancelled:
                raise
            except (LlmSetupError, OSError, ValueError) as e:
                logger.warning("Auto start: %s on %s failed: %s", model_id, config.describe(), e)
                attempts.append(f"{model_id} on {config.describe()}: {e}")
                tier -= 1
                continue

            return AutoStartResult(
                chosen_model_id=model_id,
                chosen_compute_mode=config.compute_mode,
                chosen_gpu_backend=config.gpu_backend,
                chosen_cuda_version=config.cuda_version,
                status=status,
                probe=profile,
            )

    raise AutoStartFailed(attempts)
