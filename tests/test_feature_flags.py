"""Tests for in-memory feature flags."""

import pytest

from core.feature_flags import (
    ASYNC_SNAPSHOTS,
    REALTIME_COLLABORATION,
    WS_DEBUG_MODE,
    WS_SYNC_ENABLED,
    FeatureFlags,
)


def test_defaults_from_config_section():
    """Test that lower-case config keys map onto flag names."""
    flags = FeatureFlags.from_config(
        {"ws_sync_enabled": True, "realtime_collaboration": False, "async_snapshots": True},
        environ={}
    )

    assert flags.is_enabled(WS_SYNC_ENABLED) is True
    assert flags.is_enabled(REALTIME_COLLABORATION) is False
    assert flags.is_enabled(ASYNC_SNAPSHOTS) is True
    assert flags.is_enabled(WS_DEBUG_MODE) is False


def test_environment_switches():
    """Test that the streaming switch enables both streaming flags."""
    flags = FeatureFlags(environ={"COLLAB_SYNC_WS_SYNC": "true", "COLLAB_SYNC_WS_DEBUG": "TRUE"})

    assert flags.is_enabled(WS_SYNC_ENABLED)
    assert flags.is_enabled(REALTIME_COLLABORATION)
    assert flags.is_enabled(WS_DEBUG_MODE)
    assert not flags.is_enabled(ASYNC_SNAPSHOTS)


def test_environment_switch_ignores_other_values():
    """Test that only "true" turns a switch on."""
    flags = FeatureFlags(environ={"COLLAB_SYNC_ASYNC_SNAPSHOTS": "1"})

    assert not flags.is_enabled(ASYNC_SNAPSHOTS)


def test_enable_disable_toggle():
    """Test runtime changes."""
    flags = FeatureFlags(environ={})

    flags.enable(ASYNC_SNAPSHOTS)
    assert flags.is_enabled(ASYNC_SNAPSHOTS)
    flags.disable(ASYNC_SNAPSHOTS)
    assert not flags.is_enabled(ASYNC_SNAPSHOTS)
    assert flags.toggle(ASYNC_SNAPSHOTS) is True


def test_streaming_session_helpers():
    """Test enabling and disabling both streaming flags together."""
    flags = FeatureFlags(environ={})

    flags.enable_streaming_session()
    assert flags.is_enabled(WS_SYNC_ENABLED) and flags.is_enabled(REALTIME_COLLABORATION)

    flags.disable_streaming_session()
    assert not flags.is_enabled(WS_SYNC_ENABLED)
    assert not flags.is_enabled(REALTIME_COLLABORATION)


def test_reset_to_defaults():
    """Test that reset restores configured defaults, not environment overrides."""
    flags = FeatureFlags({WS_SYNC_ENABLED: True}, environ={"COLLAB_SYNC_WS_DEBUG": "true"})
    flags.disable(WS_SYNC_ENABLED)

    flags.reset_to_defaults()

    assert flags.get_all_flags() == {
        WS_SYNC_ENABLED: True,
        REALTIME_COLLABORATION: False,
        ASYNC_SNAPSHOTS: False,
        WS_DEBUG_MODE: False,
    }


def test_listeners_called_on_change_only():
    """Test listeners fire once per actual change and can be removed."""
    flags = FeatureFlags(environ={})
    changes = []
    listener = lambda flag, enabled: changes.append((flag, enabled))
    flags.add_listener(listener)

    flags.enable(WS_SYNC_ENABLED)
    flags.enable(WS_SYNC_ENABLED)
    flags.remove_listener(listener)
    flags.disable(WS_SYNC_ENABLED)

    assert changes == [(WS_SYNC_ENABLED, True)]


def test_unknown_flag():
    """Test that unknown flags raise KeyError."""
    flags = FeatureFlags({"NOT_A_FLAG": True}, environ={})

    with pytest.raises(KeyError):
        flags.is_enabled("NOT_A_FLAG")
    with pytest.raises(KeyError):
        flags.enable("NOT_A_FLAG")
