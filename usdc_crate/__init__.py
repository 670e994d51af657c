"""
Reader for USD crate files (.usdc), the binary scene description format.

    >>> from usdc_crate import Layer
    >>> layer = Layer.load('scene.usdc')
    >>> [prim.name for prim in layer.pseudoRoot.nameChildren]

The reader decodes the table of contents, the token table, the compressed
path tree and the spec list, and composes them into a Layer whose
directory maps every Path to its Spec. Field values are kept as raw
ValueRep objects.
"""

__version__ = '0.1.0'

from usdc_crate.exceptions import (
    CrateException,
    FormatException,
    MagicException,
    CompositionException,
    UnsupportedFormatException,
)
from usdc_crate.value_types import (
    SpecType,
    SpecifierType,
    ValueType,
    ValueRep,
    Token,
    TokenRegistry,
    getDefaultRegistry,
    Path,
    Spec,
    PrimSpec,
    Layer,
)
from usdc_crate.crate_file import (
    CrateFile,
    UsdcFileFormat,
    buildPaths,
)
