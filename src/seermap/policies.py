"""Boundary and clip policy tables, defaults, and per-run validation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from .models import BoundaryPolicy, ClipPolicy, Issue, IssueCode, Layer


_P = BoundaryPolicy

LEGAL_POLICIES: Mapping[Layer, frozenset[BoundaryPolicy]] = {
    Layer.REGION: frozenset({_P.NONE, _P.DATA, _P.ALL}),
    Layer.STATE: frozenset({_P.NONE, _P.DATA, _P.REGION, _P.ALL}),
    Layer.REGISTRY: frozenset({_P.NONE, _P.DATA, _P.STATE, _P.REGION, _P.ALL}),
    Layer.HSA: frozenset({_P.NONE, _P.DATA, _P.SEER, _P.STATE}),
    Layer.COUNTY: frozenset({_P.NONE, _P.DATA, _P.HSA, _P.SEER, _P.STATE}),
    Layer.TRACT: frozenset({_P.NONE, _P.DATA, _P.COUNTY, _P.HSA, _P.SEER, _P.STATE}),
}


def _defaults(**overrides: BoundaryPolicy) -> Mapping[Layer, BoundaryPolicy]:
    values = {layer: _P.NONE for layer in LEGAL_POLICIES}
    for name, policy in overrides.items():
        values[Layer(name)] = policy
    return values


DEFAULT_POLICIES: Mapping[Layer, Mapping[Layer, BoundaryPolicy]] = {
    Layer.STATE: _defaults(state=_P.ALL),
    Layer.COUNTY: _defaults(county=_P.DATA),
    Layer.TRACT: _defaults(tract=_P.DATA),
    Layer.REGISTRY: _defaults(registry=_P.DATA),
    Layer.HSA: _defaults(hsa=_P.DATA),
}

# Config keys for the per-layer policy surface.
POLICY_KEYS: Mapping[Layer, str] = {
    Layer.REGION: "region",
    Layer.STATE: "state",
    Layer.REGISTRY: "registry",
    Layer.HSA: "hsa",
    Layer.COUNTY: "county",
    Layer.TRACT: "tract",
}


@dataclass(frozen=True, slots=True)
class PolicySet:
    """Effective boundary policy for every layer in one run."""

    level: Layer
    policies: Mapping[Layer, BoundaryPolicy]

    def get(self, layer: Layer) -> BoundaryPolicy:
        return self.policies.get(layer, BoundaryPolicy.NONE)


def participating_layers(level: Layer) -> tuple[Layer, ...]:
    """Layers resolved for a data level, fine to coarse.

    Region, state and registry always participate; HSA, county and tract only
    when the data sits at or below them.
    """
    layers: list[Layer] = []
    for layer in (Layer.TRACT, Layer.COUNTY, Layer.HSA):
        if level.rank <= layer.rank:
            layers.append(layer)
    layers.extend((Layer.REGISTRY, Layer.STATE, Layer.REGION))
    return tuple(layers)


def parse_boundary_policy(value: Any) -> BoundaryPolicy | None:
    if isinstance(value, BoundaryPolicy):
        return value
    if not isinstance(value, str):
        return None
    try:
        return BoundaryPolicy(value.strip().upper())
    except ValueError:
        return None


def resolve_policies(raw: Mapping[str, Any], level: Layer) -> tuple[PolicySet, list[Issue]]:
    """Merge caller policy values over the defaults for `level`.

    Invalid values fall back to the layer default with a warning; they never
    abort the run.
    """
    defaults = DEFAULT_POLICIES[level]
    participating = set(participating_layers(level))
    issues: list[Issue] = []
    effective: dict[Layer, BoundaryPolicy] = {}

    for layer, key in POLICY_KEYS.items():
        default = defaults[layer]
        raw_value = raw.get(key)
        if raw_value is None:
            effective[layer] = default
            continue

        policy = parse_boundary_policy(raw_value)
        if policy is None or policy not in LEGAL_POLICIES[layer]:
            legal = ", ".join(sorted(p.value for p in LEGAL_POLICIES[layer]))
            issues.append(
                Issue(
                    IssueCode.INVALID_POLICY,
                    f"{key} boundary value '{raw_value}' is not one of {legal}; "
                    f"using default {default.value}.",
                )
            )
            policy = default

        if layer not in participating and policy is not BoundaryPolicy.NONE:
            issues.append(
                Issue(
                    IssueCode.INVALID_POLICY,
                    f"{key} boundaries cannot be drawn for {level.label} data; "
                    f"ignoring {policy.value}.",
                )
            )
            policy = BoundaryPolicy.NONE
        effective[layer] = policy

    return PolicySet(level=level, policies=effective), issues


def resolve_clip_policy(raw: Any) -> tuple[ClipPolicy, list[Issue]]:
    if raw is None:
        return ClipPolicy.NONE, []
    if isinstance(raw, ClipPolicy):
        return raw, []
    if isinstance(raw, str):
        try:
            return ClipPolicy(raw.strip().upper()), []
        except ValueError:
            pass
    legal = ", ".join(p.value for p in ClipPolicy)
    issue = Issue(
        IssueCode.INVALID_POLICY,
        f"clip value '{raw}' is not one of {legal}; using default NONE.",
    )
    return ClipPolicy.NONE, [issue]
