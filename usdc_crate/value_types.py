import re
import threading
from enum import Enum

ARRAY_BIT = (1 << 63)
INLINE_BIT = (1 << 62)
COMPRESSED_BIT = (1 << 61)
PAYLOAD_MASK = (1 << 48) - 1

IDENTIFIER_RE = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')


class SpecifierType(Enum):
    Def = 0
    Over = 1
    Class = 2


class SpecType(Enum):
    Unknown     = 0
    Attribute   = 1
    Connection  = 2
    Expression  = 3
    Mapper      = 4
    MapperArg   = 5
    Prim        = 6
    PseudoRoot  = 7
    Relationship = 8
    RelationshipTarget = 9
    Variant     = 10
    VariantSet  = 11


class ValueType(Enum):
    Invalid = 0
    bool = 1
    uchar = 2
    int = 3
    uint = 4
    int64 = 5
    uint64 = 6
    half = 7
    float = 8
    double = 9
    string = 10
    token = 11
    asset = 12
    matrix2d = 13
    matrix3d = 14
    matrix4d = 15
    quatd = 16
    quatf = 17
    quath = 18
    vec2d = 19
    vec2f = 20
    vec2h = 21
    vec2i = 22
    vec3d = 23
    vec3f = 24
    vec3h = 25
    vec3i = 26
    vec4d = 27
    vec4f = 28
    vec4h = 29
    vec4i = 30
    Dictionary = 31
    TokenListOp = 32
    StringListOp = 33
    PathListOp = 34
    ReferenceListOp = 35
    IntListOp = 36
    Int64ListOp = 37
    UIntListOp = 38
    UInt64ListOp = 39
    PathVector = 40
    TokenVector = 41
    Specifier = 42
    Permission = 43
    Variability = 44
    VariantSelectionMap = 45
    TimeSamples = 46
    Payload = 47
    DoubleVector = 48
    LayerOffsetVector = 49
    StringVector = 50
    ValueBlock = 51
    Value = 52
    UnregisteredValue = 53
    UnregisteredValueListOp = 54
    PayloadListOp = 55


class ValueRep:
    '''Raw 64 bit field value: flags in the top bits, the value type in
    bits 48-55 and either the inline value or a file offset in the low
    48 bits. Nothing here follows the offset.'''

    def __init__(self, data):
        self.data = data

    def __eq__(self, other):
        return isinstance(other, ValueRep) and self.data == other.data

    def __hash__(self):
        return hash(self.data)

    def __repr__(self):
        return '<ValueRep(type=%d, array=%s, inline=%s, compressed=%s, payload=0x%x)>' % (
            self.typeCode, self.isArray, self.isInline, self.isCompressed, self.payload)

    @property
    def typeCode(self):
        return (self.data >> 48) & 0xFF

    @property
    def type(self):
        return ValueType(self.typeCode)

    @property
    def isArray(self):
        return (self.data & ARRAY_BIT) != 0

    @property
    def isInline(self):
        return (self.data & INLINE_BIT) != 0

    @property
    def isCompressed(self):
        return (self.data & COMPRESSED_BIT) != 0

    @property
    def payload(self):
        return self.data & PAYLOAD_MASK


class TokenRegistry:
    '''Interns token strings: every distinct string gets one id for the
    lifetime of the registry. Safe to share between threads.'''

    def __init__(self):
        self._lock = threading.Lock()
        self._ids = {}
        self._strings = []

    def __len__(self):
        with self._lock:
            return len(self._strings)

    def register(self, text):
        with self._lock:
            tokenId = self._ids.get(text)
            if tokenId is None:
                tokenId = len(self._strings)
                self._strings.append(text)
                self._ids[text] = tokenId
            return tokenId

    def intern(self, text):
        return Token(text, self)

    def find(self, text):
        with self._lock:
            if text not in self._ids:
                return None
        return Token(text, self)

    def getText(self, tokenId):
        with self._lock:
            return self._strings[tokenId]


_defaultRegistry = TokenRegistry()


def getDefaultRegistry():
    return _defaultRegistry


class Token:
    def __init__(self, text='', registry=None):
        if registry is None:
            registry = _defaultRegistry
        self.registry = registry
        self.id = registry.register(text)

    @property
    def text(self):
        return self.registry.getText(self.id)

    def __str__(self):
        return self.text

    def __repr__(self):
        return 'Token(%r)' % self.text

    def __eq__(self, other):
        if isinstance(other, Token):
            if other.registry is self.registry:
                return other.id == self.id
            return other.text == self.text
        if isinstance(other, str):
            return other == self.text
        return NotImplemented

    def __hash__(self):
        return hash(self.text)


class Path:
    '''Absolute scene path such as /World/mesh.points.

    Paths are immutable and compare by their string. New paths are made
    by appending a prim name or a property name to an existing path.
    '''

    def __init__(self, pathString=''):
        self._parent = None
        self._name = ''
        self._isProperty = False
        self._pathString = ''
        if pathString == '':
            return
        if not pathString.startswith('/'):
            raise ValueError('path \'%s\' is not absolute' % pathString)
        path = Path.absoluteRootPath()
        prims, dot, prop = pathString[1:].partition('.')
        if prims:
            for name in prims.split('/'):
                path = path.appendChild(name)
        if dot:
            path = path.appendProperty(prop)
        self._parent = path._parent
        self._name = path._name
        self._isProperty = path._isProperty
        self._pathString = path._pathString

    @staticmethod
    def emptyPath():
        return Path()

    @staticmethod
    def absoluteRootPath():
        path = Path()
        path._pathString = '/'
        return path

    @staticmethod
    def fromString(pathString):
        return Path(pathString)

    @staticmethod
    def isValidIdentifier(name):
        return IDENTIFIER_RE.match(name) is not None

    def _append(self, name, isProperty):
        name = str(name)
        if self.isEmpty():
            raise ValueError('cannot append \'%s\' to the empty path' % name)
        if self._isProperty:
            raise ValueError('cannot append \'%s\' to property path %s' % (name, self))
        if not name or '/' in name:
            raise ValueError('invalid path element \'%s\'' % name)
        path = Path()
        path._parent = self
        path._name = name
        path._isProperty = isProperty
        if isProperty:
            path._pathString = self._pathString + '.' + name
        elif self.isAbsoluteRootPath():
            path._pathString = '/' + name
        else:
            path._pathString = self._pathString + '/' + name
        return path

    def appendChild(self, name):
        return self._append(name, False)

    def appendProperty(self, name):
        return self._append(name, True)

    def getParentPath(self):
        if self._parent is None:
            return Path.emptyPath()
        return self._parent

    def getName(self):
        return self._name

    @property
    def name(self):
        return self._name

    @property
    def pathString(self):
        return self._pathString

    def getAsString(self):
        return self._pathString

    def isEmpty(self):
        return self._pathString == ''

    def isAbsoluteRootPath(self):
        return self._pathString == '/'

    def isPropertyPath(self):
        return self._isProperty

    def isPrimPath(self):
        return self._parent is not None and not self._isProperty

    def __str__(self):
        return self._pathString

    def __repr__(self):
        return 'Path(%r)' % self._pathString

    def __eq__(self, other):
        if isinstance(other, Path):
            return other._pathString == self._pathString
        if isinstance(other, str):
            return other == self._pathString
        return NotImplemented

    def __hash__(self):
        return hash(self._pathString)


def asPath(path):
    if isinstance(path, Path):
        return path
    return Path(path)


class Spec:
    def __init__(self, layer, path, specType, fields=None):
        self.layer = layer
        self.path = path
        self.specType = specType
        self._fields = dict(fields) if fields else {}

    def __repr__(self):
        return '<%s(%s, %s)>' % (self.__class__.__name__, self.path, self.specType.name)

    def listFields(self):
        return list(self._fields.keys())

    def hasField(self, name):
        return str(name) in self._fields

    def getField(self, name, default=None):
        return self._fields.get(str(name), default)

    def setField(self, name, value):
        self._fields[str(name)] = value
        return True

    def clearField(self, name):
        return self._fields.pop(str(name), None) is not None


class PrimSpec(Spec):
    '''A prim in a layer. Without a parent it is the layer's pseudo-root,
    which is its own name parent and lives at the absolute root path.'''

    def __init__(self, layer, parent=None, name='', specifier=SpecifierType.Def, typeName='', fields=None):
        if parent is None:
            super().__init__(layer, Path.absoluteRootPath(), SpecType.PseudoRoot, fields)
            name = '/'
        else:
            super().__init__(layer, parent.path.appendChild(name), SpecType.Prim, fields)
        if not isinstance(name, Token):
            name = Token(name, layer.registry)
        self.nameToken = name
        self.nameParent = self if parent is None else parent
        self.specifier = specifier
        self.typeName = typeName
        self.nameChildren = []
        if parent is not None:
            parent.insertNameChild(self)

    @classmethod
    def new(cls, parent, name, specifier=SpecifierType.Def, typeName=''):
        if isinstance(parent, Layer):
            parent = parent.pseudoRoot
        return cls(parent.layer, parent, name, specifier, typeName)

    @property
    def name(self):
        return self.nameToken.text

    @property
    def nameRoot(self):
        return self.layer.pseudoRoot

    def isPseudoRoot(self):
        return self.nameParent is self

    def insertNameChild(self, child, index=None):
        if index is None:
            index = len(self.nameChildren)
        if index < 0 or index > len(self.nameChildren):
            return False
        self.nameChildren.insert(index, child)
        return True

    def getChild(self, name):
        return next((c for c in self.nameChildren if c.name == name), None)


class Layer:
    '''Directory of the specs read from one file, keyed by path.'''

    def __init__(self, registry=None):
        self.registry = registry if registry is not None else _defaultRegistry
        self._directory = {}
        self.pseudoRoot = PrimSpec(self)
        self._directory[self.pseudoRoot.path] = self.pseudoRoot

    def __len__(self):
        return len(self._directory)

    def __contains__(self, path):
        return self.hasSpec(path)

    @classmethod
    def load(cls, filePath, registry=None):
        from usdc_crate.crate_file import CrateFile
        return CrateFile.fromPath(filePath, registry).read()

    @classmethod
    def fromBytes(cls, data, registry=None):
        from usdc_crate.crate_file import CrateFile
        return CrateFile(data, registry).read()

    def addSpec(self, spec):
        self._directory[spec.path] = spec
        return spec

    def hasSpec(self, path):
        return self._directory.get(asPath(path)) is not None

    def getSpecType(self, path):
        spec = self._directory.get(asPath(path))
        if spec is None:
            return SpecType.Unknown
        return spec.specType

    def getObjectAtPath(self, path):
        return self._directory.get(asPath(path))

    def getPrimAtPath(self, path):
        spec = self.getObjectAtPath(path)
        return spec if isinstance(spec, PrimSpec) else None

    def listSpecs(self):
        return list(self._directory.values())
