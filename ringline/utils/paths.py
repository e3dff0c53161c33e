"""
Path management for Ringline.

Three path modes:
- dev: Use local paths (./ringline_dev_paths/*) - default for development
- xdg: Use XDG paths (~/.config, ~/.local/share) - XDG standard
- dot: Use dot directory (~/.ringline/*)

Toggle via the RINGLINE_PATH_MODE environment variable.
"""

import os
from pathlib import Path
from typing import Optional


# Path mode: 'dev', 'xdg', or 'dot'
PATH_MODE = os.getenv('RINGLINE_PATH_MODE', 'dev').lower()


class Paths:
    """
    Centralized path management for the application.
    """

    def __init__(self, profile: str = 'default', mode: Optional[str] = None):
        """
        Initialize paths for the application.

        Args:
            profile: Profile name for multi-profile support (e.g., 'default', 'work')
            mode: Path mode override (default: RINGLINE_PATH_MODE)
        """
        self.profile = profile
        self.mode = (mode or PATH_MODE).lower()
        self._project_root = Path(__file__).parent.parent.parent

    @property
    def project_root(self) -> Path:
        """Project root directory."""
        return self._project_root

    def _base(self, kind: str, xdg_root: Path) -> Path:
        if self.mode == 'xdg':
            xdg_root.mkdir(parents=True, mode=0o700, exist_ok=True)
            base = xdg_root / 'ringline'
        elif self.mode == 'dot':
            dot_root = Path.home() / '.ringline'
            dot_root.mkdir(mode=0o700, exist_ok=True)
            base = dot_root / kind
        else:  # dev
            base = self._project_root / 'ringline_dev_paths' / kind

        path = base / self.profile if self.profile != 'default' else base
        path.mkdir(parents=True, exist_ok=True, mode=0o700)
        return path

    @property
    def config_dir(self) -> Path:
        """Configuration directory (calls.yaml)."""
        return self._base('config', Path.home() / '.config')

    @property
    def data_dir(self) -> Path:
        """Data directory (call database)."""
        return self._base('data', Path.home() / '.local' / 'share')

    @property
    def log_dir(self) -> Path:
        """Log directory."""
        if self.mode == 'xdg':
            # XDG: ~/.local/share/ringline/<profile>/logs/
            base = self.data_dir / 'logs'
        else:
            base = self._base('logs', Path.home() / '.local' / 'share')

        base.mkdir(parents=True, exist_ok=True, mode=0o700)
        return base

    @property
    def config_path(self) -> Path:
        """Call settings file path."""
        return self.config_dir / 'calls.yaml'

    @property
    def database_path(self) -> Path:
        """Call record database file path."""
        db_path = self.data_dir / 'ringline.db'
        # Ensure secure permissions (0600)
        if db_path.exists():
            os.chmod(db_path, 0o600)
        return db_path

    def user_log_path(self, user_id: str) -> Path:
        """
        Application log path for a specific signed-in identity.

        Args:
            user_id: Authenticated user identity

        Returns:
            Path to the per-user log file
        """
        safe_id = user_id.replace('/', '_').replace('@', '_at_')
        return self.log_dir / f'user-{safe_id}.log'

    def main_log_path(self) -> Path:
        """Main application log path (global, not user-specific)."""
        return self.log_dir / 'main.log'


# Global instance for default profile
_default_paths: Optional[Paths] = None


def get_paths(profile: str = 'default') -> Paths:
    """
    Get Paths instance for a profile.

    Args:
        profile: Profile name (default: 'default')

    Returns:
        Paths instance
    """
    global _default_paths

    if profile == 'default':
        if _default_paths is None:
            _default_paths = Paths(profile)
        return _default_paths

    return Paths(profile)
