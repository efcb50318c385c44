"""Tests for label schema compilation and per-line relabeling."""

import pytest

from accesslog_exporter.config import RelabelConfig
from accesslog_exporter.errors import ConfigError, DuplicateLabelError
from accesslog_exporter.relabeling import (
    DEFAULT_RELABELINGS,
    OTHER_VALUE,
    Relabeling,
    compile_namespace,
    compile_pipeline,
)


def rule(**kwargs) -> RelabelConfig:
    return RelabelConfig.model_validate(kwargs)


class TestSchema:
    """Tests for label schema layout."""

    @pytest.mark.core
    def test_schema_is_static_then_builtin_then_user(self) -> None:
        """Static labels come first, then built-in targets, then user targets."""
        pipeline = compile_pipeline(
            "nginx",
            {"app": "magicapp", "env": "prod"},
            [rule(target_label="user", **{"from": "remote_user"})],
        )
        assert pipeline.schema.names == ("app", "env", "method", "status", "user")

    @pytest.mark.core
    def test_builtin_defaults_are_method_and_status(self) -> None:
        """The documented default rule set is exactly method and status."""
        assert [r.target_label for r in DEFAULT_RELABELINGS] == ["method", "status"]

    @pytest.mark.core
    def test_user_rule_sharing_builtin_target_reuses_position(self) -> None:
        """Overriding a built-in target does not add a second label."""
        pipeline = compile_pipeline("nginx", {}, [rule(target_label="status", **{"from": "status"})])
        assert pipeline.schema.names == ("method", "status")

    @pytest.mark.core
    def test_static_and_rule_target_collision_is_fatal(self) -> None:
        with pytest.raises(DuplicateLabelError) as exc:
            compile_pipeline("nginx", {"status": "x"}, [])
        assert exc.value.label == "status"

    @pytest.mark.core
    def test_two_user_rules_with_same_target_is_fatal(self) -> None:
        rules = [
            rule(target_label="path", **{"from": "request"}),
            rule(target_label="path", **{"from": "request_uri"}),
        ]
        with pytest.raises(DuplicateLabelError):
            compile_pipeline("nginx", {}, rules)

    @pytest.mark.core
    def test_user_rule_colliding_with_static_label_is_fatal(self) -> None:
        with pytest.raises(DuplicateLabelError):
            compile_pipeline("nginx", {"app": "a"}, [rule(target_label="app", **{"from": "host"})])

    @pytest.mark.core
    def test_compile_namespace_uses_config(self, namespace_config) -> None:
        cfg = namespace_config(labels={"app": "shop"})
        assert compile_namespace(cfg).schema.names == ("app", "method", "status")


class TestApply:
    """Tests for RelabelPipeline.apply()."""

    @pytest.mark.core
    def test_vector_length_matches_schema(self) -> None:
        """Every vector has exactly one value per schema label, even for empty records."""
        pipeline = compile_pipeline("nginx", {"app": "a"}, [rule(target_label="user", **{"from": "remote_user"})])
        for record in ({}, {"status": "200"}, {"request": "GET / HTTP/1.1", "remote_user": "bob", "x": "y"}):
            assert len(pipeline.apply(record)) == len(pipeline.schema)

    @pytest.mark.core
    def test_static_values_and_builtin_rules(self) -> None:
        pipeline = compile_pipeline("nginx", {"app": "magicapp"}, [])
        labels = pipeline.apply({"request": "POST /api HTTP/1.1", "status": "201"})
        assert labels == ("magicapp", "POST", "201")

    @pytest.mark.core
    def test_missing_source_field_gives_empty_value(self) -> None:
        pipeline = compile_pipeline("nginx", {}, [])
        assert pipeline.apply({"status": "200"}) == ("", "200")

    @pytest.mark.core
    def test_later_rule_wins_when_both_match(self) -> None:
        """A user rule overrides the built-in rule with the same target."""
        pipeline = compile_pipeline(
            "nginx", {},
            [rule(target_label="status", **{"from": "status"},
                  matches=[{"regexp": "^([0-9])[0-9][0-9]$", "replacement": "${1}xx"}])],
        )
        assert pipeline.apply({"status": "404"}) == ("", "4xx")

    @pytest.mark.core
    def test_earlier_value_kept_when_later_rule_does_not_match(self) -> None:
        """A non-matching override leaves the built-in rule's value for that line."""
        pipeline = compile_pipeline(
            "nginx", {},
            [rule(target_label="status", **{"from": "status"},
                  matches=[{"regexp": "^5", "replacement": "error"}])],
        )
        assert pipeline.apply({"status": "200"}) == ("", "200")
        assert pipeline.apply({"status": "503"}) == ("", "error")

    @pytest.mark.core
    def test_no_value_leaks_into_next_line(self) -> None:
        """A label written on one line falls back to its default on the next."""
        pipeline = compile_pipeline(
            "nginx", {},
            [rule(target_label="user_path", **{"from": "request"}, split=2,
                  matches=[{"regexp": "^/users/[0-9]+", "replacement": "/users/:id"}])],
        )
        first = pipeline.apply({"request": "GET /users/42 HTTP/1.1", "status": "200"})
        second = pipeline.apply({"request": "GET /about HTTP/1.1", "status": "200"})
        third = pipeline.apply({"status": "200"})
        assert first == ("GET", "200", "/users/:id")
        assert second == ("GET", "200", "")
        assert third == ("", "200", "")

    @pytest.mark.core
    def test_default_fallback_used_when_rule_yields_nothing(self) -> None:
        pipeline = compile_pipeline(
            "nginx", {},
            [rule(target_label="tier", **{"from": "host"}, default="unknown",
                  matches=[{"regexp": "^api\\.", "replacement": "api"}])],
        )
        assert pipeline.apply({"host": "api.example.com"})[-1] == "api"
        assert pipeline.apply({"host": "www.example.com"})[-1] == "unknown"
        assert pipeline.apply({})[-1] == "unknown"

    @pytest.mark.core
    def test_apply_returns_new_tuple_each_time(self) -> None:
        pipeline = compile_pipeline("nginx", {}, [])
        a = pipeline.apply({"status": "200"})
        b = pipeline.apply({"status": "200"})
        assert isinstance(a, tuple)
        assert a == b


class TestRelabelingMap:
    """Tests for a single rule's mapping."""

    @pytest.mark.core
    def test_identity(self) -> None:
        r = Relabeling.from_config(rule(target_label="host", **{"from": "host"}))
        assert r.map("example.com") == "example.com"

    @pytest.mark.core
    def test_split_picks_one_based_element(self) -> None:
        r = Relabeling.from_config(rule(target_label="uri", **{"from": "request"}, split=2))
        assert r.map("GET /foo HTTP/1.1") == "/foo"

    @pytest.mark.core
    def test_split_out_of_range_gives_nothing(self) -> None:
        r = Relabeling.from_config(rule(target_label="proto", **{"from": "request"}, split=3))
        assert r.map("GET /foo") is None

    @pytest.mark.core
    def test_split_with_custom_separator(self) -> None:
        r = Relabeling.from_config(rule(target_label="first", **{"from": "xff"}, split=1, separator=","))
        assert r.map("10.0.0.1,10.0.0.2") == "10.0.0.1"

    @pytest.mark.core
    def test_whitelist_maps_unknown_values_to_other(self) -> None:
        r = Relabeling.from_config(rule(target_label="method", **{"from": "m"}, whitelist=["GET", "POST"]))
        assert r.map("GET") == "GET"
        assert r.map("TRACE") == OTHER_VALUE

    @pytest.mark.core
    def test_first_matching_regexp_wins(self) -> None:
        r = Relabeling.from_config(rule(
            target_label="path", **{"from": "uri"},
            matches=[
                {"regexp": "^/users/([0-9]+)$", "replacement": "/users/:id"},
                {"regexp": "^/users/.*", "replacement": "/users/other"},
            ],
        ))
        assert r.map("/users/12") == "/users/:id"
        assert r.map("/users/me") == "/users/other"
        assert r.map("/shop") is None

    @pytest.mark.core
    def test_named_group_and_dollar_escape(self) -> None:
        r = Relabeling.from_config(rule(
            target_label="cur", **{"from": "uri"},
            matches=[{"regexp": "^/price/(?P<cur>[a-z]+)$", "replacement": "$${cur}$$"}],
        ))
        assert r.map("/price/eur") == "$eur$"

    @pytest.mark.core
    def test_backslashes_in_replacement_are_literal(self) -> None:
        r = Relabeling.from_config(rule(
            target_label="p", **{"from": "uri"},
            matches=[{"regexp": "^(.*)$", "replacement": "a\\$1"}],
        ))
        assert r.map("x") == "a\\x"

    @pytest.mark.core
    def test_replacement_with_unknown_group_is_rejected(self) -> None:
        with pytest.raises(ConfigError):
            Relabeling.from_config(rule(
                target_label="p", **{"from": "uri"},
                matches=[{"regexp": "^/(a)$", "replacement": "$2"}],
            ))
