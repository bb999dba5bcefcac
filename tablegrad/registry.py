"""
Formula Registry
================

Turns the declarative derivative table (:mod:`tablegrad.derivatives`) into
lookup-ready backward rules.

A table entry names an operation overload by its signature and maps each
differentiable input to a formula::

    entry("mul(Tensor self, Tensor other)",
          self=lambda grad, other, self_shape: F.reduce_to(grad * other, self_shape),
          other=lambda grad, self, other_shape: F.reduce_to(grad * self, other_shape))

A formula is an ordinary Python callable. Its parameter names say what it
reads, and they are resolved when the node runs backward:

- ``grad``             gradient of the first output
- ``grads``            gradients of every output, in order
- ``grad_input_mask``  which of the covered inputs need a gradient
- any argument name    the forward input (a Variable for tensor arguments)
- ``<arg>_shape``      only the shape of a tensor argument
- ``<arg>_dtype``      only the dtype of a tensor argument
- any output name      the forward output (``result`` for single outputs)

The union of those names over an entry's rules is precisely what a graph node
saves during the forward pass, so operations never keep more than their
formulas need.

Several inputs can share one formula by listing them in a single key
(``"self, other"``); such a formula returns one gradient per covered input.
"""

from __future__ import annotations

import inspect
import re
import threading
from collections import Counter
from typing import (
    Any, Callable, Dict, Iterator, List, Mapping, NamedTuple, Optional, Sequence, Tuple,
)

from .config import get_settings
from .errors import (
    MalformedEntry, NotImplementedGradient, UncoveredInput, UnknownOperation,
)
from .logger import get_logger

logger = get_logger(__name__)


DIFFERENTIABLE_TYPES = frozenset({"Tensor", "TensorList"})
TENSOR_TYPES = DIFFERENTIABLE_TYPES | {"IndexTensor", "BoolTensor"}
NON_TENSOR_TYPES = frozenset({
    "Scalar", "int64_t", "double", "bool", "IntList", "ScalarType", "str",
})
RESERVED_NAMES = frozenset({"grad", "grads", "grad_input_mask", "result"})

_SIGNATURE = re.compile(r"^\s*(?P<name>[A-Za-z_][\w.]*)\s*\((?P<args>[^()]*)\)\s*(?:->\s*(?P<returns>.+?))?\s*$")
_NAME = re.compile(r"^[A-Za-z_]\w*$")


# =============================================================================
# Signatures
# =============================================================================

class Argument(NamedTuple):
    type: str
    name: str
    kwarg_only: bool = False

    @property
    def is_tensor(self) -> bool:
        return self.type in TENSOR_TYPES

    @property
    def differentiable(self) -> bool:
        return self.type in DIFFERENTIABLE_TYPES

    def __str__(self) -> str:
        return f"{self.type} {self.name}"


class Schema:
    """
    A parsed operation signature.

    Example:
        >>> s = Schema.parse("max(Tensor self, int64_t dim, bool keepdim) -> (Tensor values, IndexTensor indices)")
        >>> s.key
        'max(Tensor self, int64_t dim, bool keepdim)'
        >>> s.differentiable_inputs
        ('self',)
    """

    __slots__ = ("name", "arguments", "returns")

    def __init__(self, name: str, arguments: Sequence[Argument], returns: Sequence[Argument]) -> None:
        self.name = name
        self.arguments: Tuple[Argument, ...] = tuple(arguments)
        self.returns: Tuple[Argument, ...] = tuple(returns)

    @classmethod
    def parse(cls, text: str) -> "Schema":
        match = _SIGNATURE.match(text)
        if match is None:
            raise MalformedEntry(f"cannot parse signature {text!r}")

        arguments: List[Argument] = []
        kwarg_only = False
        for part in _split(match.group("args")):
            if part == "*":
                if kwarg_only:
                    raise MalformedEntry(f"{text!r}: '*' given twice")
                kwarg_only = True
                continue
            arguments.append(_parse_argument(part, text, kwarg_only))

        names = [a.name for a in arguments]
        if len(set(names)) != len(names):
            raise MalformedEntry(f"{text!r}: duplicate argument names")
        for arg in arguments:
            if arg.name in RESERVED_NAMES:
                raise MalformedEntry(
                    f"{text!r}: argument name '{arg.name}' is reserved for formulas"
                )

        returns = _parse_returns(match.group("returns"), text)
        clash = set(names) & {r.name for r in returns}
        if clash:
            raise MalformedEntry(f"{text!r}: outputs reuse argument names {sorted(clash)}")
        return cls(match.group("name"), arguments, returns)

    @property
    def key(self) -> str:
        """Overload identity: name plus typed arguments, without returns."""
        parts: List[str] = []
        star = False
        for arg in self.arguments:
            if arg.kwarg_only and not star:
                parts.append("*")
                star = True
            parts.append(str(arg))
        return f"{self.name}({', '.join(parts)})"

    @property
    def argument_names(self) -> Tuple[str, ...]:
        return tuple(a.name for a in self.arguments)

    @property
    def differentiable_inputs(self) -> Tuple[str, ...]:
        return tuple(a.name for a in self.arguments if a.differentiable)

    @property
    def output_names(self) -> Tuple[str, ...]:
        return tuple(r.name for r in self.returns)

    def argument(self, name: str) -> Argument:
        for arg in self.arguments:
            if arg.name == name:
                return arg
        raise KeyError(name)

    def __str__(self) -> str:
        if len(self.returns) == 1 and self.returns[0].name == "result":
            return f"{self.key} -> {self.returns[0].type}"
        return f"{self.key} -> ({', '.join(str(r) for r in self.returns)})"

    def __repr__(self) -> str:
        return f"Schema({str(self)!r})"


def _split(text: str) -> List[str]:
    return [part.strip() for part in text.split(",") if part.strip()]


def _parse_argument(part: str, text: str, kwarg_only: bool) -> Argument:
    pieces = part.split()
    if len(pieces) != 2 or not _NAME.match(pieces[1]):
        raise MalformedEntry(f"{text!r}: cannot parse argument {part!r}")
    type_name, name = pieces
    if type_name not in TENSOR_TYPES and type_name not in NON_TENSOR_TYPES:
        raise MalformedEntry(f"{text!r}: unknown argument type {type_name!r}")
    return Argument(type_name, name, kwarg_only)


def _parse_returns(text: Optional[str], signature: str) -> Tuple[Argument, ...]:
    if text is None:
        return (Argument("Tensor", "result"),)
    text = text.strip()
    if text.startswith("(") and text.endswith(")"):
        parts = _split(text[1:-1])
    else:
        parts = [text]

    returns = []
    for part in parts:
        pieces = part.split()
        if len(pieces) == 1:
            if len(parts) > 1:
                raise MalformedEntry(f"{signature!r}: multiple outputs must be named")
            pieces = [pieces[0], "result"]
        if len(pieces) != 2 or not _NAME.match(pieces[1]):
            raise MalformedEntry(f"{signature!r}: cannot parse output {part!r}")
        type_name, name = pieces
        if type_name not in TENSOR_TYPES and type_name not in NON_TENSOR_TYPES:
            raise MalformedEntry(f"{signature!r}: unknown output type {type_name!r}")
        returns.append(Argument(type_name, name))
    return tuple(returns)


# =============================================================================
# Table builders
# =============================================================================

class TableEntry(NamedTuple):
    """One raw row of the declarative table, before validation."""
    signature: str
    formulas: Mapping[str, Any]
    fallthrough: bool = False


class _NotImplementedMarker(NamedTuple):
    op_name: str


class _BogusZeroMarker(NamedTuple):
    op_name: str


def entry(signature: str, formulas: Optional[Mapping[str, Any]] = None, **by_input: Any) -> TableEntry:
    """
    Declare the backward formulas of one operation overload.

    Joint formulas use a comma-separated key and must be passed through the
    ``formulas`` mapping; single-input formulas may also be keyword arguments.
    """
    merged: Dict[str, Any] = dict(formulas or {})
    for name, formula in by_input.items():
        if name in merged:
            raise MalformedEntry(f"{signature!r}: formula for {name!r} given twice")
        merged[name] = formula
    return TableEntry(signature, merged)


def fallthrough(signature: str) -> TableEntry:
    """Declare an operation whose outputs never take part in differentiation."""
    return TableEntry(signature, {}, fallthrough=True)


def not_implemented(op_name: str) -> _NotImplementedMarker:
    """Formula placeholder for a derivative nobody has written yet."""
    return _NotImplementedMarker(op_name)


def bogus_zero(op_name: str) -> _BogusZeroMarker:
    """
    Formula placeholder for a zero gradient whose correctness is unverified.

    It only produces zeros when ``allow_bogus_gradients`` is switched on;
    otherwise it behaves like :func:`not_implemented`.
    """
    return _BogusZeroMarker(op_name)


# =============================================================================
# Backward rules
# =============================================================================

class BackwardRule:
    """
    Computes the gradients of one or more inputs of an operation.

    ``apply(grad_outputs, saved, mask)`` returns one entry per covered input,
    ``None`` wherever ``mask`` says the gradient is not wanted.
    """

    kind = "rule"

    def __init__(self, covers: Sequence[str], params: Sequence[str] = ()) -> None:
        self.covers: Tuple[str, ...] = tuple(covers)
        self.params: Tuple[str, ...] = tuple(params)

    @property
    def requires_mask(self) -> bool:
        return "grad_input_mask" in self.params

    @property
    def saved_names(self) -> Tuple[str, ...]:
        return tuple(p for p in self.params if p not in ("grad", "grads", "grad_input_mask"))

    def apply(self, grad_outputs: Sequence[Any], saved: Mapping[str, Any],
              mask: Sequence[bool]) -> List[Any]:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}({', '.join(self.covers)})"


class FormulaRule(BackwardRule):
    kind = "formula"

    def __init__(self, covers: Sequence[str], fn: Callable[..., Any], params: Sequence[str]) -> None:
        super().__init__(covers, params)
        self.fn = fn

    def apply(self, grad_outputs, saved, mask):
        scope: Dict[str, Any] = {}
        for name in self.params:
            if name == "grad":
                scope[name] = grad_outputs[0]
            elif name == "grads":
                scope[name] = list(grad_outputs)
            elif name == "grad_input_mask":
                scope[name] = list(mask)
            else:
                scope[name] = saved[name]

        out = self.fn(**scope)
        if len(self.covers) == 1:
            out = (out,)
        else:
            out = tuple(out)
            if len(out) != len(self.covers):
                raise MalformedEntry(
                    f"formula for '{', '.join(self.covers)}' returned {len(out)} "
                    f"gradients, expected {len(self.covers)}"
                )
        return [g if wanted else None for g, wanted in zip(out, mask)]


class NotImplementedRule(BackwardRule):
    kind = "not_implemented"

    def __init__(self, covers: Sequence[str], op_name: str) -> None:
        super().__init__(covers)
        self.op_name = op_name

    def apply(self, grad_outputs, saved, mask):
        raise NotImplementedGradient(self.op_name)


class BogusZeroRule(BackwardRule):
    kind = "bogus_zero"

    def __init__(self, covers: Sequence[str], op_name: str) -> None:
        params = [f"{c}_shape" for c in covers] + [f"{c}_dtype" for c in covers]
        super().__init__(covers, params)
        self.op_name = op_name

    def apply(self, grad_outputs, saved, mask):
        if not get_settings().allow_bogus_gradients:
            raise NotImplementedGradient(
                self.op_name, "zero-gradient stub disabled; set allow_bogus_gradients to use it"
            )
        from . import ops

        logger.warning("using unverified zero gradient for %s", self.op_name)
        return [
            ops.zeros(saved[f"{c}_shape"], dtype=saved[f"{c}_dtype"]) if wanted else None
            for c, wanted in zip(self.covers, mask)
        ]


class DerivativeEntry:
    """A validated table entry: the schema plus its ordered backward rules."""

    __slots__ = ("schema", "rules", "fallthrough", "saved_names", "_by_input")

    def __init__(self, schema: Schema, rules: Sequence[BackwardRule], fallthrough: bool = False) -> None:
        self.schema = schema
        self.rules: Tuple[BackwardRule, ...] = tuple(rules)
        self.fallthrough = fallthrough
        names = []
        for rule in self.rules:
            for name in rule.saved_names:
                if name not in names:
                    names.append(name)
        self.saved_names: Tuple[str, ...] = tuple(names)
        self._by_input = {name: rule for rule in self.rules for name in rule.covers}

    @property
    def key(self) -> str:
        return self.schema.key

    @property
    def name(self) -> str:
        return self.schema.name

    @property
    def kind(self) -> str:
        if self.fallthrough:
            return "fallthrough"
        kinds = {rule.kind for rule in self.rules}
        if not kinds:
            return "formula"
        return kinds.pop() if len(kinds) == 1 else "mixed"

    @property
    def has_formula(self) -> bool:
        return any(isinstance(rule, FormulaRule) for rule in self.rules)

    def rule_for(self, input_name: str) -> BackwardRule:
        return self._by_input[input_name]

    def __repr__(self) -> str:
        return f"DerivativeEntry({str(self.schema)!r}, kind={self.kind})"


# =============================================================================
# Registry
# =============================================================================

class FormulaRegistry:
    """
    Operation overload -> :class:`DerivativeEntry`.

    Construction validates every entry and fails fast: a differentiable input
    without a rule raises :class:`UncoveredInput`, any other inconsistency
    raises :class:`MalformedEntry`.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, DerivativeEntry] = {}

    @classmethod
    def from_table(cls, table: Sequence[TableEntry]) -> "FormulaRegistry":
        registry = cls()
        for item in table:
            registry.add(item)
        counts = registry.summary()
        logger.debug(
            "loaded %d derivative entries (%s)",
            len(registry),
            ", ".join(f"{kind}={n}" for kind, n in sorted(counts.items())),
        )
        return registry

    def add(self, item: TableEntry) -> DerivativeEntry:
        schema = Schema.parse(item.signature)
        if schema.key in self._entries:
            raise MalformedEntry(f"duplicate table entry for {schema.key}")

        if item.fallthrough:
            if item.formulas:
                raise MalformedEntry(f"{schema.key}: a fallthrough entry cannot carry formulas")
            built = DerivativeEntry(schema, (), fallthrough=True)
        else:
            built = DerivativeEntry(schema, self._build_rules(schema, item.formulas))

        self._entries[schema.key] = built
        return built

    def _build_rules(self, schema: Schema, formulas: Mapping[str, Any]) -> List[BackwardRule]:
        differentiable = schema.differentiable_inputs
        scope = _scope_names(schema)
        covered: Dict[str, str] = {}
        rules: List[BackwardRule] = []

        for key, formula in formulas.items():
            covers = _split(key)
            if not covers:
                raise MalformedEntry(f"{schema.key}: empty formula key")
            for name in covers:
                if name not in schema.argument_names:
                    raise MalformedEntry(f"{schema.key}: formula for unknown input '{name}'")
                if name not in differentiable:
                    raise MalformedEntry(
                        f"{schema.key}: input '{name}' of type "
                        f"{schema.argument(name).type} is not differentiable"
                    )
                if name in covered:
                    raise MalformedEntry(
                        f"{schema.key}: input '{name}' covered by both "
                        f"'{covered[name]}' and '{key}'"
                    )
                covered[name] = key
            rules.append(_build_rule(schema, covers, formula, scope))

        for name in differentiable:
            if name not in covered:
                raise UncoveredInput(schema.key, name)

        # rules run in signature order
        order = {name: i for i, name in enumerate(schema.argument_names)}
        rules.sort(key=lambda rule: order[rule.covers[0]])
        return rules

    def lookup(self, signature: str) -> DerivativeEntry:
        key = signature if signature in self._entries else Schema.parse(signature).key
        try:
            return self._entries[key]
        except KeyError:
            raise UnknownOperation(f"no derivative table entry for {key}") from None

    def summary(self) -> Counter:
        return Counter(entry.kind for entry in self._entries.values())

    def __contains__(self, signature: str) -> bool:
        try:
            self.lookup(signature)
        except UnknownOperation:
            return False
        return True

    def __iter__(self) -> Iterator[DerivativeEntry]:
        return iter(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)


def _scope_names(schema: Schema) -> set:
    names = {"grad", "grads", "grad_input_mask"}
    for arg in schema.arguments + schema.returns:
        names.add(arg.name)
        if arg.is_tensor:
            names.add(f"{arg.name}_shape")
            names.add(f"{arg.name}_dtype")
    return names


def _build_rule(schema: Schema, covers: List[str], formula: Any, scope: set) -> BackwardRule:
    if isinstance(formula, _NotImplementedMarker):
        return NotImplementedRule(covers, formula.op_name)
    if isinstance(formula, _BogusZeroMarker):
        for name in covers:
            if schema.argument(name).type != "Tensor":
                raise MalformedEntry(f"{schema.key}: bogus_zero() only covers Tensor inputs")
        return BogusZeroRule(covers, formula.op_name)
    if not callable(formula):
        raise MalformedEntry(f"{schema.key}: formula for '{', '.join(covers)}' is not callable")

    params = []
    for param in inspect.signature(formula).parameters.values():
        if param.kind not in (param.POSITIONAL_OR_KEYWORD, param.KEYWORD_ONLY):
            raise MalformedEntry(
                f"{schema.key}: formulas take named parameters only, got '{param}'"
            )
        if param.name not in scope:
            raise MalformedEntry(
                f"{schema.key}: formula for '{', '.join(covers)}' reads unknown name '{param.name}'"
            )
        params.append(param.name)
    if "grad_input_mask" in params and len(covers) == 1:
        logger.debug("%s: grad_input_mask on a single-input formula", schema.key)
    return FormulaRule(covers, formula, params)


# =============================================================================
# Default registry
# =============================================================================

_default: Optional[FormulaRegistry] = None
_default_lock = threading.Lock()


def default_registry() -> FormulaRegistry:
    """The registry built from :data:`tablegrad.derivatives.DERIVATIVES`, built once."""
    global _default
    if _default is None:
        with _default_lock:
            if _default is None:
                from .derivatives import DERIVATIVES

                _default = FormulaRegistry.from_table(DERIVATIVES)
    return _default
