# LLM provisioning components
from app.llama_bootstrap import auto_install_default_runtime
from llm.supervisor import BuiltinLlmSupervisor
from services.builtin_llm_service import BuiltinLlmService
from helpers.platforms import current_platform
from interfaces.config.app_config import AppConfigShape

# Standard utilities
import atexit
import logging

logger = logging.getLogger(__name__)


def build_container(cfg: AppConfigShape, platform=None):
    """
    Dependency container builder
    Responsibility:
     - Takes a fully loaded config object
     - Unpacks the bundled default runtime on first launch
     - Constructs the supervisor and the service exactly once
     - Returns a dictionary of ready-to-use services
    """
    platform = platform or current_platform()

    # ---------- First launch -----------
    # Never raises; a missing bundle just means the runtime is downloaded later
    auto_install_default_runtime(cfg.paths, platform=platform, download=cfg.download)

    # ---------- Server supervisor -----------
    supervisor = BuiltinLlmSupervisor(
        paths=cfg.paths,
        server=cfg.server,
        download=cfg.download,
        platform=platform,
    )

    # Ensure the server is stopped cleanly on program exit
    atexit.register(supervisor.shutdown)

    # ---------- Service facade -----------
    llm_service = BuiltinLlmService(
        supervisor=supervisor,
        tiers=cfg.tiers,
    )

    logger.debug("Container built for %s on %s", cfg.paths.llm_dir, platform.name)

    # ---- RETURN CONTAINER -----
    return {
        "cfg": cfg,
        "platform": platform,
        "supervisor": supervisor,
        "llm": llm_service,
    }
