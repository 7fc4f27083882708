"""ShapeUnderCloth fits SMPL-family body models to clothed surface scans.

The pose, shape, translation and optionally per-vertex displacements of the body model are
estimated by minimizing signed distances between the model vertices and the observed
surface, regularized by a Gaussian pose prior.

Main submodules:
- :mod:`shapeundercloth.np` - NumPy/SciPy implementation of the body model, the signed
  distance resolution, the residual blocks and the solver
"""

from __future__ import annotations

from .common import (
    ConfigurationError,
    GeometryError,
    IllegalStateError,
    ModelData,
    PriorFormatError,
    initialize,
    _set_module_for_docs,
)

try:
    from ._version import version as __version__
except ImportError:
    __version__ = '0.1.0'

__all__ = [
    'ModelData',
    'initialize',
    'ConfigurationError',
    'IllegalStateError',
    'PriorFormatError',
    'GeometryError',
    '__version__',
]
_set_module_for_docs(__name__, globals(), __all__)
