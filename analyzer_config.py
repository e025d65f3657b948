#!/usr/bin/env python3
"""
analyzer_config.py - Heuristic weights and analyzer settings

The opportunity heuristics are driven by four weight sets. Each is a tuple of
coefficients (alpha, beta, gamma, delta, epsilon, lambda); which coefficients a
heuristic reads is documented in call_opportunities.py.

Settings can be overridden from a YAML file:

    weights:
      batching:
        lambda: 0.5
        epsilon: 0.4
      duplication:
        alpha: 0.2
    ecall_minimum: 10
    ocall_minimum: 10
    percentiles: [100, 95]
    workers: 4
    resolver: stack
"""

from __future__ import annotations

import dataclasses
from typing import FrozenSet, Optional, Set, Tuple

import yaml


@dataclasses.dataclass(frozen=True)
class Weights:
    alpha: float = 0.0
    beta: float = 0.0
    gamma: float = 0.0
    delta: float = 0.0
    epsilon: float = 0.0
    lam: float = 0.0


@dataclasses.dataclass(frozen=True)
class HeuristicWeights:
    duplication: Weights = Weights(alpha=0.35, beta=0.50, gamma=0.65)
    reordering: Weights = Weights(alpha=1.00, beta=0.75, gamma=0.50)
    merging: Weights = Weights(alpha=1.00, beta=0.75, gamma=0.50, delta=0.25, epsilon=0.35, lam=0.35)
    batching: Weights = Weights(alpha=1.00, beta=0.75, gamma=0.50, delta=0.25, epsilon=0.35, lam=0.35)


@dataclasses.dataclass(frozen=True)
class Phases:
    calls: bool = True
    sync: bool = True
    interface: bool = True


@dataclasses.dataclass
class AnalyzerConfig:
    ecall_call_minimum: int = 0
    ocall_call_minimum: int = 0
    phases: Phases = Phases()
    weights: HeuristicWeights = HeuristicWeights()
    ecall_set: FrozenSet[int] = frozenset()
    ocall_set: FrozenSet[int] = frozenset()
    graph: Optional[str] = None
    call_data_dir: Optional[str] = None
    edl_path: Optional[str] = None
    percentiles: Tuple[int, ...] = (100, 99, 95)
    workers: Optional[int] = None
    resolver: str = "scan"


WEIGHT_KEYS = {
    "alpha": "alpha",
    "beta": "beta",
    "gamma": "gamma",
    "delta": "delta",
    "epsilon": "epsilon",
    "lambda": "lam",
}

RESOLVERS = ("scan", "stack")


def _override_weights(base: Weights, spec: dict, heuristic: str) -> Weights:
    if not isinstance(spec, dict):
        raise ValueError(f"weights.{heuristic} must be a mapping of coefficient -> value")
    changes = {}
    for key, value in spec.items():
        if key not in WEIGHT_KEYS:
            raise ValueError(f"Unknown coefficient '{key}' in weights.{heuristic}")
        try:
            changes[WEIGHT_KEYS[key]] = float(value)
        except (TypeError, ValueError) as e:
            raise ValueError(f"weights.{heuristic}.{key} must be a number, got {value!r}") from e
    return dataclasses.replace(base, **changes)


def parse_weights(data: dict, base: Optional[HeuristicWeights] = None) -> HeuristicWeights:
    base = base or HeuristicWeights()
    if not isinstance(data, dict):
        raise ValueError("'weights' must be a mapping")
    changes = {}
    for heuristic, spec in data.items():
        if heuristic not in {f.name for f in dataclasses.fields(HeuristicWeights)}:
            raise ValueError(f"Unknown heuristic '{heuristic}' in weights")
        changes[heuristic] = _override_weights(getattr(base, heuristic), spec, heuristic)
    return dataclasses.replace(base, **changes)


def load_config_file(path: str, config: Optional[AnalyzerConfig] = None) -> AnalyzerConfig:
    """Apply the settings of a YAML file on top of config (or the defaults)."""
    config = config or AnalyzerConfig()
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return config
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a mapping at the top level")

    changes = {}
    if "weights" in data:
        changes["weights"] = parse_weights(data["weights"], config.weights)
    if "ecall_minimum" in data:
        changes["ecall_call_minimum"] = _non_negative(data["ecall_minimum"], "ecall_minimum")
    if "ocall_minimum" in data:
        changes["ocall_call_minimum"] = _non_negative(data["ocall_minimum"], "ocall_minimum")
    if "percentiles" in data:
        pcts = data["percentiles"]
        if not isinstance(pcts, list) or not pcts:
            raise ValueError("'percentiles' must be a non-empty list")
        changes["percentiles"] = tuple(_percentile(p) for p in pcts)
    if "workers" in data:
        workers = _non_negative(data["workers"], "workers")
        changes["workers"] = workers or None
    if "resolver" in data:
        if data["resolver"] not in RESOLVERS:
            raise ValueError(f"'resolver' must be one of {', '.join(RESOLVERS)}")
        changes["resolver"] = data["resolver"]
    return dataclasses.replace(config, **changes)


def _non_negative(value, name: str) -> int:
    try:
        n = int(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"'{name}' must be an integer, got {value!r}") from e
    if n < 0:
        raise ValueError(f"'{name}' must be positive")
    return n


def _percentile(value) -> int:
    p = _non_negative(value, "percentiles")
    if not 1 <= p <= 100:
        raise ValueError(f"percentile {p} is out of range 1..100")
    return p


def parse_call_ids(text: str) -> Tuple[Set[int], Set[int]]:
    """
    Parse a call id list like "e1,e19,o3" into (ecall ids, ocall ids).
    """
    ecalls: Set[int] = set()
    ocalls: Set[int] = set()
    for token in text.split(","):
        token = token.strip()
        if not token:
            continue
        prefix, digits = token[0], token[1:]
        if prefix not in ("e", "o") or not digits.isdigit():
            raise ValueError(f"Invalid call id '{token}', expected e<id> or o<id>")
        (ecalls if prefix == "e" else ocalls).add(int(digits))
    return ecalls, ocalls


def parse_phases(text: str) -> Phases:
    unknown = set(text) - set("csi")
    if unknown:
        raise ValueError(f"Unknown phase(s): {''.join(sorted(unknown))}")
    interface = "i" in text
    # the interface hints read the call relations
    return Phases(calls="c" in text or interface, sync="s" in text, interface=interface)
