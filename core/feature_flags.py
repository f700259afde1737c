"""
Feature flags for gradual rollout of streaming sync.

Flags live in memory only. Defaults come from the ``feature_flags``
configuration section and can be overridden through environment variables;
toggling at runtime never persists anything.
"""

import logging
import os
from typing import Callable, Dict, List, Mapping, Optional


logger = logging.getLogger(__name__)

WS_SYNC_ENABLED = "WS_SYNC_ENABLED"
REALTIME_COLLABORATION = "REALTIME_COLLABORATION"
ASYNC_SNAPSHOTS = "ASYNC_SNAPSHOTS"
WS_DEBUG_MODE = "WS_DEBUG_MODE"

KNOWN_FLAGS = (WS_SYNC_ENABLED, REALTIME_COLLABORATION, ASYNC_SNAPSHOTS, WS_DEBUG_MODE)

ENV_PREFIX = "COLLAB_SYNC_"

# Environment switch -> flags it enables
_ENV_SWITCHES = {
    "WS_SYNC": (WS_SYNC_ENABLED, REALTIME_COLLABORATION),
    "WS_DEBUG": (WS_DEBUG_MODE,),
    "ASYNC_SNAPSHOTS": (ASYNC_SNAPSHOTS,),
}

FlagListener = Callable[[str, bool], None]


class FeatureFlags:
    """
    In-memory feature flag service.

    Listeners registered with ``add_listener`` are called with
    ``(flag, enabled)`` whenever a flag actually changes value.
    """

    def __init__(
        self,
        defaults: Optional[Mapping[str, bool]] = None,
        environ: Optional[Mapping[str, str]] = None
    ):
        """
        Initialize FeatureFlags.

        Args:
            defaults: Initial values keyed by flag name (unknown flags are ignored)
            environ: Environment mapping to read overrides from (default: os.environ)
        """
        self._defaults: Dict[str, bool] = {flag: False for flag in KNOWN_FLAGS}
        for flag, value in (defaults or {}).items():
            flag = flag.upper()
            if flag in self._defaults:
                self._defaults[flag] = bool(value)

        self._flags = dict(self._defaults)
        self._flags.update(self._load_from_environment(os.environ if environ is None else environ))
        self._listeners: List[FlagListener] = []

        logger.info(f"Loaded feature flags: {self._flags}")

    @classmethod
    def from_config(cls, section: Mapping[str, bool], environ: Optional[Mapping[str, str]] = None) -> 'FeatureFlags':
        """Build flags from the ``feature_flags`` configuration section."""
        return cls({key.upper(): value for key, value in section.items()}, environ=environ)

    def _load_from_environment(self, environ: Mapping[str, str]) -> Dict[str, bool]:
        flags = {}
        for switch, targets in _ENV_SWITCHES.items():
            if environ.get(ENV_PREFIX + switch, "").lower() == "true":
                for flag in targets:
                    flags[flag] = True
        return flags

    def is_enabled(self, flag: str) -> bool:
        """
        Check whether a flag is on.

        Raises:
            KeyError: If the flag is unknown
        """
        return self._flags[flag]

    def enable(self, flag: str) -> None:
        self._set(flag, True)

    def disable(self, flag: str) -> None:
        self._set(flag, False)

    def toggle(self, flag: str) -> bool:
        """Flip a flag and return its new value."""
        self._set(flag, not self.is_enabled(flag))
        return self._flags[flag]

    def get_all_flags(self) -> Dict[str, bool]:
        return dict(self._flags)

    def reset_to_defaults(self) -> None:
        for flag, value in self._defaults.items():
            self._set(flag, value)
        logger.info("Reset all feature flags to defaults")

    def enable_streaming_session(self) -> None:
        """Turn on streaming sync and realtime collaboration for this session."""
        self.enable(WS_SYNC_ENABLED)
        self.enable(REALTIME_COLLABORATION)

    def disable_streaming_session(self) -> None:
        """Turn off streaming sync and realtime collaboration for this session."""
        self.disable(WS_SYNC_ENABLED)
        self.disable(REALTIME_COLLABORATION)

    def add_listener(self, listener: FlagListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: FlagListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _set(self, flag: str, enabled: bool) -> None:
        if flag not in self._flags:
            raise KeyError(f"Unknown feature flag: {flag}")
        if self._flags[flag] == enabled:
            return

        self._flags[flag] = enabled
        logger.info(f"Feature flag {flag} = {enabled}")

        for listener in list(self._listeners):
            listener(flag, enabled)
