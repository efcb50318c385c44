"""
Relabeling: turns the fields of one parsed log line into label values.

A namespace's labels are laid out once, at startup, as a LabelSchema:

    static labels ++ built-in relabel targets ++ user relabel targets

Every line then gets its own LabelVector, a tuple aligned to that schema.
Rules run in order (built-ins first, then user rules as declared) and only
write a position when they produce a value, so a later rule with the same
target as a built-in one overrides it. Positions no rule wrote on a line keep
the label's default, never the value from an earlier line.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import FrozenSet, Iterable, List, Mapping, Optional, Pattern, Tuple

from accesslog_exporter.config import NamespaceConfig, RelabelConfig
from accesslog_exporter.errors import ConfigError, DuplicateLabelError

LabelVector = Tuple[str, ...]

OTHER_VALUE = "other"

# Always present, evaluated before user rules. Keep this list short: every
# entry becomes a label on every metric of every namespace.
DEFAULT_RELABELINGS: Tuple[RelabelConfig, ...] = (
    RelabelConfig(target_label="method", source_value="request", split=1),
    RelabelConfig(target_label="status", source_value="status"),
)

_GROUP_REF_RE = re.compile(r"\$(?:\{(\w+)\}|(\w+)|(\$))")


def _replacement_template(pattern: Pattern[str], replacement: str) -> str:
    """
    Converts a '$1' / '${name}' style replacement into an re.sub template and
    checks that every referenced group exists. '$$' is a literal '$'.
    """
    escaped = replacement.replace("\\", "\\\\")

    def sub(m: "re.Match[str]") -> str:
        if m.group(3):
            return "$"
        ref = m.group(1) or m.group(2)
        if ref.isdigit():
            if int(ref) > pattern.groups:
                raise ConfigError(f"replacement {replacement!r} refers to missing group ${ref}")
        elif ref not in pattern.groupindex:
            raise ConfigError(f"replacement {replacement!r} refers to missing group ${ref}")
        return f"\\g<{ref}>"

    return _GROUP_REF_RE.sub(sub, escaped)


@dataclass(frozen=True)
class Relabeling:
    target_label: str
    source_value: str
    split: int = 0
    separator: str = " "
    whitelist: Optional[FrozenSet[str]] = None
    matches: Tuple[Tuple[Pattern[str], str], ...] = ()
    default: Optional[str] = None

    @classmethod
    def from_config(cls, rc: RelabelConfig) -> "Relabeling":
        matches = []
        for m in rc.matches:
            pattern = re.compile(m.regexp)
            matches.append((pattern, _replacement_template(pattern, m.replacement)))
        return cls(
            target_label=rc.target_label,
            source_value=rc.source_value,
            split=rc.split,
            separator=rc.separator,
            whitelist=frozenset(rc.whitelist) if rc.whitelist else None,
            matches=tuple(matches),
            default=rc.default,
        )

    def map(self, value: str) -> Optional[str]:
        """Mapped label value, or None when the rule has nothing to say for this value."""
        if self.split > 0:
            parts = value.split(self.separator)
            if len(parts) < self.split:
                return None
            value = parts[self.split - 1]

        if self.whitelist is not None:
            return value if value in self.whitelist else OTHER_VALUE

        if self.matches:
            for pattern, template in self.matches:
                if pattern.search(value):
                    return pattern.sub(template, value)
            return None

        return value


@dataclass(frozen=True)
class LabelSchema:
    names: Tuple[str, ...]

    def __len__(self) -> int:
        return len(self.names)

    def __iter__(self):
        return iter(self.names)


@dataclass(frozen=True)
class RelabelPipeline:
    schema: LabelSchema
    defaults: LabelVector
    rules: Tuple[Tuple[int, Relabeling], ...]

    def apply(self, record: Mapping[str, str]) -> LabelVector:
        values = list(self.defaults)
        for pos, rule in self.rules:
            raw = record.get(rule.source_value)
            if raw is None:
                continue
            mapped = rule.map(raw)
            if mapped is not None:
                values[pos] = mapped
        return tuple(values)


def compile_pipeline(
    namespace: str,
    static_labels: Mapping[str, str],
    relabel_configs: Iterable[RelabelConfig],
    defaults: Iterable[RelabelConfig] = DEFAULT_RELABELINGS,
) -> RelabelPipeline:
    """
    Lays out the label schema and the ordered rule list for one namespace.

    A user rule may reuse the target of a built-in rule (it overrides it).
    Any other repeated label name raises DuplicateLabelError.
    """
    names: List[str] = list(static_labels.keys())
    initial: List[str] = list(static_labels.values())
    rules: List[Tuple[int, Relabeling]] = []

    builtin_targets = set()
    for rc in defaults:
        if rc.target_label in names:
            raise DuplicateLabelError(namespace, rc.target_label)
        names.append(rc.target_label)
        initial.append(rc.default or "")
        builtin_targets.add(rc.target_label)
        rules.append((len(names) - 1, Relabeling.from_config(rc)))

    user_targets = set()
    for rc in relabel_configs:
        target = rc.target_label
        if target in static_labels or target in user_targets:
            raise DuplicateLabelError(namespace, target)
        user_targets.add(target)
        if target in builtin_targets:
            pos = names.index(target)
            if rc.default is not None:
                initial[pos] = rc.default
        else:
            names.append(target)
            initial.append(rc.default or "")
            pos = len(names) - 1
        rules.append((pos, Relabeling.from_config(rc)))

    schema = LabelSchema(names=tuple(names))
    return RelabelPipeline(schema=schema, defaults=tuple(initial), rules=tuple(rules))


def compile_namespace(cfg: NamespaceConfig) -> RelabelPipeline:
    return compile_pipeline(cfg.name, cfg.labels, cfg.relabel_configs)
