from dataclasses import dataclass
from pathlib import Path

from platformdirs import user_cache_dir, user_config_dir, user_log_dir

APP_NAME = "gpt-cli"


@dataclass(frozen=True)
class AppPaths:
    cache_dir: Path
    config_dir: Path
    log_dir: Path

    @property
    def config_file(self) -> Path:
        return self.config_dir / "config.json"


def resolve_app_paths() -> AppPaths:
    return AppPaths(
        cache_dir=Path(user_cache_dir(APP_NAME, appauthor=False)),
        config_dir=Path(user_config_dir(APP_NAME, appauthor=False)),
        log_dir=Path(user_log_dir(APP_NAME, appauthor=False)),
    )
