from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Literal, Mapping

import numpy as np

from .priors import Prior
from .proposals import ProposalKernel


ParameterRole = Literal["de", "obs", "init"]
PARAMETER_ROLES: tuple[str, ...] = ("de", "obs", "init")


class ParameterConfigError(ValueError):
    """Raised when a parameter declaration cannot be used for inference."""


@dataclass(frozen=True)
class Parameter:
    """One model parameter.

    role:
        "de" for parameters of the differential equations, "obs" for parameters
        of the observation model, "init" for initial values of state variables.
    fixed:
        Fixed parameters only need a value. A prior or proposal on a fixed
        parameter is kept but never used.
    block:
        Free parameters sharing a block name are proposed jointly; all others
        are updated one at a time.
    """

    name: str
    role: ParameterRole
    value: float
    fixed: bool = True
    prior: Prior | None = None
    proposal: ProposalKernel | None = None
    block: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name:
            raise ParameterConfigError("Parameter name must be a non-empty string.")
        if self.role not in PARAMETER_ROLES:
            raise ParameterConfigError(
                f"Parameter '{self.name}': role must be one of {PARAMETER_ROLES} (got {self.role!r})."
            )
        try:
            value = float(self.value)
        except (TypeError, ValueError) as e:
            raise ParameterConfigError(f"Parameter '{self.name}': value must be a real number.") from e
        object.__setattr__(self, "value", value)
        object.__setattr__(self, "fixed", bool(self.fixed))
        if self.fixed:
            return
        if self.prior is None:
            raise ParameterConfigError(f"Free parameter '{self.name}' has no prior.")
        if self.proposal is None:
            raise ParameterConfigError(f"Free parameter '{self.name}' has no proposal kernel.")
        if not np.isfinite(value):
            raise ParameterConfigError(f"Free parameter '{self.name}' needs a finite starting value.")

    @property
    def free(self) -> bool:
        return not self.fixed


def log_prior(value: float, parameter: Parameter) -> float:
    """Log prior density of ``value`` under the parameter's declared prior.

    Returns -inf outside the prior support. Fixed parameters contribute nothing.
    """
    if parameter.fixed:
        return 0.0
    assert parameter.prior is not None
    return parameter.prior.logpdf(value)


class ParameterSet(Mapping[str, Parameter]):
    """Immutable, ordered collection of uniquely named parameters."""

    def __init__(self, parameters: tuple[Parameter, ...] = ()) -> None:
        seen: dict[str, Parameter] = {}
        for p in parameters:
            if not isinstance(p, Parameter):
                raise ParameterConfigError(f"Expected Parameter, got {type(p).__name__}.")
            if p.name in seen:
                raise ParameterConfigError(f"Duplicate parameter name '{p.name}'.")
            seen[p.name] = p
        self._params = seen

    def __getitem__(self, name: str) -> Parameter:
        return self._params[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._params)

    def __len__(self) -> int:
        return len(self._params)

    def __repr__(self) -> str:
        return f"ParameterSet({list(self._params)})"

    def register(self, parameter: Parameter) -> "ParameterSet":
        return ParameterSet(tuple(self._params.values()) + (parameter,))

    def split(self) -> tuple["ParameterSet", "ParameterSet"]:
        return split(self)

    def by_role(self, role: ParameterRole) -> "ParameterSet":
        return ParameterSet(tuple(p for p in self._params.values() if p.role == role))

    @property
    def free_names(self) -> list[str]:
        return [p.name for p in self._params.values() if p.free]

    def as_values(self) -> dict[str, float]:
        return {name: p.value for name, p in self._params.items()}

    def merged(self, free_values: Mapping[str, float]) -> dict[str, float]:
        """Full value mapping with ``free_values`` overriding the declared values."""
        out = self.as_values()
        for name, v in free_values.items():
            if name not in self._params:
                raise KeyError(f"Unknown parameter '{name}'.")
            out[name] = float(v)
        return out

    def with_values(self, new_values: Mapping[str, float]) -> "ParameterSet":
        """Copy of the set with updated values (e.g. posterior means as a new start)."""
        params = []
        for p in self._params.values():
            if p.name in new_values:
                params.append(
                    Parameter(
                        name=p.name,
                        role=p.role,
                        value=float(new_values[p.name]),
                        fixed=p.fixed,
                        prior=p.prior,
                        proposal=p.proposal,
                        block=p.block,
                    )
                )
            else:
                params.append(p)
        return ParameterSet(tuple(params))

    def proposal_blocks(self) -> list[tuple[str, ...]]:
        """Groups of free parameter names updated together, in declaration order."""
        blocks: list[tuple[str, ...]] = []
        named: dict[str, list[str]] = {}
        order: list[str | tuple[str, ...]] = []
        for p in self._params.values():
            if p.fixed:
                continue
            if p.block is None:
                order.append((p.name,))
            else:
                if p.block not in named:
                    named[p.block] = []
                    order.append(p.block)
                named[p.block].append(p.name)
        for item in order:
            blocks.append(tuple(named[item]) if isinstance(item, str) else item)
        return blocks

    def log_prior(self, values: Mapping[str, float]) -> float:
        """Sum of log priors over the free parameters, evaluated at ``values``."""
        total = 0.0
        for p in self._params.values():
            if p.fixed:
                continue
            lp = log_prior(values[p.name], p)
            if not np.isfinite(lp):
                return -np.inf
            total += lp
        return float(total)


def setup_parameters(*parameters: Parameter) -> ParameterSet:
    """Collect individually declared parameters into one registry."""
    return ParameterSet(tuple(parameters))


def register(parameters: ParameterSet, parameter: Parameter) -> ParameterSet:
    return parameters.register(parameter)


def split(parameters: ParameterSet) -> tuple[ParameterSet, ParameterSet]:
    """Partition into (free, fixed) subsets, preserving declaration order."""
    free = tuple(parameters[n] for n in parameters if parameters[n].free)
    fixed = tuple(parameters[n] for n in parameters if parameters[n].fixed)
    return ParameterSet(free), ParameterSet(fixed)
