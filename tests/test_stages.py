"""Tests for the per-call stage registry."""

import pytest

from baton.errors import ConfigError, StaleStageError
from baton.stages import StageRegistry


def scan(ctx):
    pass


def load(ctx):
    pass


class TestDeclaration:
    def test_order_is_declaration_order(self):
        registry = StageRegistry([("scan", scan), ("load", load)])
        assert registry.names == ("scan", "load")
        assert registry.first == "scan"
        assert list(registry) == [("scan", scan), ("load", load)]

    def test_mapping_keeps_insertion_order(self):
        registry = StageRegistry({"load": load, "scan": scan})
        assert registry.first == "load"

    def test_decorators(self):
        registry = StageRegistry()

        @registry.on_start
        def begin(ctx):
            pass

        @registry.stage("scan")
        def scan_stage(ctx):
            pass

        @registry.on_end
        def finish(ctx):
            pass

        assert registry.start is begin
        assert registry.end is finish
        assert registry.resolve("scan") is scan_stage
        assert len(registry) == 1
        assert "scan" in registry

    def test_duplicate_name(self):
        with pytest.raises(ConfigError, match="twice"):
            StageRegistry([("scan", scan), ("scan", load)])

    @pytest.mark.parametrize("name", ["", None, 3])
    def test_invalid_name(self, name):
        with pytest.raises(ConfigError):
            StageRegistry([(name, scan)])

    def test_handler_must_be_callable(self):
        with pytest.raises(ConfigError):
            StageRegistry([("scan", "not callable")])
        with pytest.raises(ConfigError):
            StageRegistry([("scan", scan)], start=42)

    def test_empty_registry_has_no_first(self):
        registry = StageRegistry()
        with pytest.raises(ConfigError):
            registry.first
        with pytest.raises(ConfigError):
            registry.validate()


class TestResolve:
    def test_unknown_stage(self):
        registry = StageRegistry([("scan", scan)])
        with pytest.raises(StaleStageError) as exc_info:
            registry.resolve("load")
        assert exc_info.value.registered == ("scan",)

    def test_repr(self):
        registry = StageRegistry([("scan", scan)], end=load)
        assert repr(registry) == "StageRegistry(stages=['scan'], start=False, end=True)"
