from __future__ import annotations

from pathlib import Path


class ConfigurationProbe:
    """Answers whether onboarding has produced the agent's configuration file.

    The file is checked on every call; onboarding can complete while other
    requests are in flight. File-system errors count as "not configured".
    """

    def __init__(self, *, config_file: Path) -> None:
        self.config_file = Path(config_file)

    def is_configured(self) -> bool:
        try:
            return self.config_file.is_file()
        except OSError:
            return False


__all__ = ["ConfigurationProbe"]
