"""Central configuration for compak.

Settings come from three layers, later layers winning:

1. Dataclass defaults.
2. ``<state_dir>/config.yaml`` (read with PyYAML when present).
3. ``COMPAK_*`` environment variables.

The CLI applies its own flags on top via :meth:`CompakConfig.with_overrides`.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

import yaml

from compak.exceptions import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_STATE_DIR = Path("~/.compak")
CONFIG_FILENAME = "config.yaml"

UPDATE_STRATEGIES = ("requested", "locked-floor")

_ENV_OVERRIDES: dict[str, str] = {
    "COMPAK_REGISTRY": "registry_url",
    "COMPAK_MAX_WORKERS": "max_workers",
    "COMPAK_TIMEOUT": "timeout",
}


@dataclass
class CompakConfig:
    """compak settings.

    Attributes:
        state_dir: Per-user state directory (config, default local registry).
        registry_url: Registry location. A path or ``file://`` URL selects
            the directory registry, ``http(s)://`` the HTTP registry.
            Empty means ``<state_dir>/registry``.
        timeout: Registry request timeout in seconds.
        max_retries: Retries for transient registry failures.
        backoff_base: First retry delay in seconds, doubled on each retry.
        max_workers: Bound on concurrent registry fetches.
        override_file: Default compose override file for package fragments.
        lockfile_name: Lockfile name inside the project directory.
        update_strategy: ``"requested"`` re-resolves from the originally
            requested ranges; ``"locked-floor"`` also keeps locked versions
            as minimums.
        extra: Unknown keys from the config file, kept verbatim.
    """

    state_dir: Path = DEFAULT_STATE_DIR
    registry_url: str = ""
    timeout: float = 30.0
    max_retries: int = 3
    backoff_base: float = 0.5
    max_workers: int = 8
    override_file: str = "docker-compose.compak.yml"
    lockfile_name: str = "compak.lock"
    update_strategy: str = "requested"
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.state_dir = Path(self.state_dir).expanduser()
        self.timeout = float(self.timeout)
        self.backoff_base = float(self.backoff_base)
        self.max_retries = int(self.max_retries)
        self.max_workers = int(self.max_workers)
        self.validate()

    def validate(self) -> None:
        """Raise ``ValidationError`` listing every invalid setting."""
        problems: list[str] = []
        if self.timeout <= 0:
            problems.append(f"timeout must be positive (got {self.timeout})")
        if self.max_retries < 0:
            problems.append(f"max_retries must be >= 0 (got {self.max_retries})")
        if self.backoff_base < 0:
            problems.append(f"backoff_base must be >= 0 (got {self.backoff_base})")
        if self.max_workers < 1:
            problems.append(f"max_workers must be >= 1 (got {self.max_workers})")
        if self.update_strategy not in UPDATE_STRATEGIES:
            problems.append(
                f"update_strategy must be one of {', '.join(UPDATE_STRATEGIES)} "
                f"(got {self.update_strategy!r})"
            )
        if not self.override_file or Path(self.override_file).is_absolute():
            problems.append("override_file must be a relative path")
        if problems:
            raise ValidationError("Invalid configuration", details=problems)

    @property
    def registry(self) -> str:
        """Effective registry location."""
        return self.registry_url or str(self.state_dir / "registry")

    @classmethod
    def load(
        cls,
        path: Path | None = None,
        environ: dict[str, str] | None = None,
    ) -> CompakConfig:
        """Load configuration from file and environment.

        Args:
            path: Explicit config file. Defaults to
                ``$COMPAK_HOME/config.yaml`` or ``~/.compak/config.yaml``.
            environ: Environment mapping (defaults to ``os.environ``).

        Returns:
            The merged configuration.

        Raises:
            ValidationError: If the file is not valid YAML or a value is
                out of range.
        """
        env = dict(os.environ if environ is None else environ)
        state_dir = Path(env.get("COMPAK_HOME", str(DEFAULT_STATE_DIR))).expanduser()
        config_path = path or state_dir / CONFIG_FILENAME

        data: dict[str, Any] = {}
        if config_path.is_file():
            try:
                loaded = yaml.safe_load(config_path.read_text(encoding="utf-8"))
            except yaml.YAMLError as exc:
                raise ValidationError(f"Invalid config file {config_path}: {exc}") from exc
            if loaded is None:
                loaded = {}
            if not isinstance(loaded, dict):
                raise ValidationError(
                    f"Config file {config_path} must contain a mapping"
                )
            data = loaded
            logger.debug("Loaded config from %s", config_path)

        known = {f.name for f in fields(cls)} - {"extra"}
        matched = {k: v for k, v in data.items() if k in known}
        extra = {k: v for k, v in data.items() if k not in known}
        matched.setdefault("state_dir", state_dir)

        for var, attr in _ENV_OVERRIDES.items():
            if env.get(var):
                matched[attr] = env[var]

        try:
            return cls(**matched, extra=extra)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Invalid configuration: {exc}") from exc

    def with_overrides(self, **overrides: Any) -> CompakConfig:
        """Return a copy with the non-None keyword overrides applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes) if changes else self
