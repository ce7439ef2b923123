from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

@dataclass(frozen=True, slots=True)
class LlmPathsConfig:
    """
    File system locations used by the built-in LLM.

    llm_dir holds `runtime/<variant>/` and is owned by the app.
    models_dir is user-configurable and holds the .gguf files.
    resource_dir is the bundled-resource root shipped with the app (may be absent).
    """
    llm_dir: Path
    models_dir: Path
    resource_dir: Optional[Path] = None

    @property
    def runtime_root(self) -> Path:
        return self.llm_dir / "runtime"

    def bundled_candidates(self, *parts: str) -> list[Path]:
        """
        Places a bundled file may live in. Installers differ on whether the
        resources folder itself is nested one level deeper.
        """
        if self.resource_dir is None:
            return []
        return [
            self.resource_dir.joinpath("llm", *parts),
            self.resource_dir.joinpath("resources", "llm", *parts),
        ]

    @staticmethod
    def from_strings(
        llm_dir: str | Path,
        models_dir: str | Path | None = None,
        resource_dir: str | Path | None = None,
    ) -> "LlmPathsConfig":
        """
        Convenience constructor for CLI/env usage.
        The models directory defaults to `<llm_dir>/models`.
        """
        llm = LlmPathsConfig._norm(llm_dir)
        return LlmPathsConfig(
            llm_dir=llm,
            models_dir=LlmPathsConfig._norm(models_dir) if models_dir else llm / "models",
            resource_dir=LlmPathsConfig._norm(resource_dir) if resource_dir else None,
        )

    def ensure_dirs(self) -> None:
        """
        Create the llm directory. The models directory is created on demand.
        """
        self.llm_dir.mkdir(parents=True, exist_ok=True)

    def validate(self) -> None:
        """
        Existing paths must be directories.
        Raises ValueError with a helpful message if something is wrong
        """
        for p, label in [
            (self.llm_dir, "llm_dir"),
            (self.models_dir, "models_dir"),
        ]:
            if p.exists() and not p.is_dir():
                raise ValueError(f"{label} exists but is not a directory: {p}")
        if self.resource_dir is not None and self.resource_dir.exists() and not self.resource_dir.is_dir():
            raise ValueError(f"resource_dir exists but is not a directory: {self.resource_dir}")

    @staticmethod
    def _norm(p: str | Path) -> Path:
        """
        Normalize a path: expand ~ and resolve to an absolute path.
        """
        return Path(p).expanduser().resolve()
