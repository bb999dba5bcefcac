"""TableGrad: a table-driven reverse-mode autograd engine over numpy arrays."""

from . import ops
from .config import Settings, configure, get_settings, override
from .engine import Engine, backward, grad
from .errors import (
    AccumulatorNotReady,
    AutogradError,
    GraphFreed,
    MalformedEntry,
    NotImplementedGradient,
    RegistryError,
    ShapeMismatch,
    UncoveredInput,
    UnknownOperation,
)
from .grad_mode import enable_grad, is_grad_enabled, no_grad, set_grad_enabled
from .gradcheck import GradcheckError, gradcheck, gradgradcheck
from .graph import draw_graph, topological_sort
from .registry import FormulaRegistry, default_registry
from .variable import Variable

# Every forward kernel must have a table entry with matching outputs.
ops.check_kernels(default_registry())

__all__ = [
    "Variable",
    "ops",
    "backward",
    "grad",
    "Engine",
    "no_grad",
    "enable_grad",
    "set_grad_enabled",
    "is_grad_enabled",
    "gradcheck",
    "gradgradcheck",
    "topological_sort",
    "draw_graph",
    "FormulaRegistry",
    "default_registry",
    "Settings",
    "get_settings",
    "configure",
    "override",
    "AutogradError",
    "RegistryError",
    "UncoveredInput",
    "MalformedEntry",
    "UnknownOperation",
    "NotImplementedGradient",
    "ShapeMismatch",
    "AccumulatorNotReady",
    "GraphFreed",
    "GradcheckError",
]
