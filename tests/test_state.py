import pytest

from lead_autosync.state import InvalidTransition, TenantState, TenantStateRegistry


def test_happy_path(silent_logger):
    registry = TenantStateRegistry(logger=silent_logger)
    assert registry.get("t1") is TenantState.IDLE
    registry.begin_sync("t1")
    registry.begin_replies("t1")
    registry.finish("t1")
    assert registry.get("t1") is TenantState.IDLE


def test_sync_without_replies_returns_to_idle(silent_logger):
    registry = TenantStateRegistry(logger=silent_logger)
    registry.begin_sync("t1")
    registry.finish("t1")
    assert registry.get("t1") is TenantState.IDLE


@pytest.mark.parametrize("steps", [[], ["begin_sync"], ["begin_sync", "begin_replies"]])
def test_disabled_reachable_from_any_state(silent_logger, steps):
    registry = TenantStateRegistry(logger=silent_logger)
    for step in steps:
        getattr(registry, step)("t1")
    registry.disable("t1")
    assert registry.get("t1") is TenantState.DISABLED


def test_illegal_moves_raise(silent_logger):
    registry = TenantStateRegistry(logger=silent_logger)
    with pytest.raises(InvalidTransition):
        registry.begin_replies("t1")
    registry.begin_sync("t1")
    with pytest.raises(InvalidTransition):
        registry.begin_sync("t1")
    registry.disable("t1")
    with pytest.raises(InvalidTransition) as excinfo:
        registry.begin_sync("t1")
    assert excinfo.value.current is TenantState.DISABLED


def test_reset_leaves_disabled(silent_logger):
    registry = TenantStateRegistry(logger=silent_logger)
    registry.disable("t1")
    registry.reset("t1")
    registry.begin_sync("t1")
    assert registry.snapshot() == {"t1": "syncing"}
