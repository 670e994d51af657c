import io
import logging
import os
from collections import namedtuple
from enum import Enum

from usdc_crate.compression_utils import *
from usdc_crate.exceptions import *
from usdc_crate.value_types import *


logger = logging.getLogger(__name__)

CRATE_MAGIC = b'PXR-USDC'
BOOTSTRAP_SIZE = 24
TOC_ITEM_SIZE = 32
SECTION_NAME_SIZE = 16

# Marks the end of each field set in the FIELDSETS array.
FIELD_SET_TERMINATOR = 0xFFFFFFFF

# Upper bound on compressed integers per byte of input (LZ4 ratio times
# four codes per byte).
MAX_INTS_PER_BYTE = 1024

# Largest expansion of a single LZ4 block.
MAX_LZ4_RATIO = 255

TOKENS = 'TOKENS'
STRINGS = 'STRINGS'
FIELDS = 'FIELDS'
FIELDSETS = 'FIELDSETS'
PATHS = 'PATHS'
SPECS = 'SPECS'


TocSection = namedtuple('TocSection', ['name', 'start', 'end'])


Field = namedtuple('Field', ['tokenIndex', 'valueRep'])

CrateSpec = namedtuple('CrateSpec', ['pathIndex', 'fieldSetIndex', 'specType'])


class JumpKind(Enum):
    Leaf = 0
    ChildOnly = 1
    SiblingOnly = 2
    ChildAndSibling = 3


class PathJump(namedtuple('PathJump', ['kind', 'offset'])):
    '''Decoded entry of the PATHS jump array.

    -2 ends the branch, -1 means the next entry is a child, 0 means the
    next entry is a sibling and a positive value means the next entry is a
    child and the sibling sits that many entries ahead.
    '''
    __slots__ = ()

    @classmethod
    def decode(cls, jump):
        if jump == -2:
            return cls(JumpKind.Leaf, 0)
        if jump == -1:
            return cls(JumpKind.ChildOnly, 0)
        if jump == 0:
            return cls(JumpKind.SiblingOnly, 1)
        if jump > 0:
            return cls(JumpKind.ChildAndSibling, jump)
        raise FormatException('invalid path jump %d' % jump)

    @property
    def hasChild(self):
        return self.kind in (JumpKind.ChildOnly, JumpKind.ChildAndSibling)

    @property
    def hasSibling(self):
        return self.kind in (JumpKind.SiblingOnly, JumpKind.ChildAndSibling)


def readBytes(file, size):
    offset = file.tell()
    buffer = file.read(size)
    if len(buffer) < size:
        raise FormatException('expected %d bytes at offset 0x%08x, got %d' % (size, offset, len(buffer)))
    return buffer


def readInt(file, size, byteorder='little', signed=False):
    buffer = readBytes(file, size)
    return int.from_bytes(buffer, byteorder=byteorder, signed=signed)


def readCompressedInts(file, numInts, intSize=4, signed=False):
    size = readInt(file, 8)
    if numInts == 0:
        readBytes(file, size)
        return []
    size = min(size, getMaxCompressedBufferSize(numInts, intSize))
    buffer = lz4Decompress(readBytes(file, size), getMaxEncodedBufferSize(numInts, intSize))
    return decodeCompressedInts(buffer, numInts, intSize, signed)


def getTokenAt(tokens, index):
    if index >= len(tokens):
        raise FormatException('token index %d out of range (%d tokens)' % (index, len(tokens)))
    return tokens[index]


def appendPathElement(parentPath, elementTokenIndex, tokens):
    # negative indices name properties
    token = getTokenAt(tokens, abs(elementTokenIndex))
    try:
        if elementTokenIndex < 0:
            return parentPath.appendProperty(token)
        return parentPath.appendChild(token)
    except ValueError as e:
        raise FormatException('cannot append %r to %s' % (str(token), parentPath)) from e


def buildPaths(pathIndices, elementTokenIndices, jumps, tokens):
    '''Rebuild the paths of a PATHS section.

    The three arrays describe a pre-order walk of the path tree; entry i
    is written to slot pathIndices[i] of the result. Sibling branches are
    queued with the parent of the entry that points at them.
    '''
    numPaths = len(pathIndices)
    if len(elementTokenIndices) != numPaths or len(jumps) != numPaths:
        raise FormatException('path arrays differ in length: %d, %d, %d' % (
            numPaths, len(elementTokenIndices), len(jumps)))
    paths = [None] * numPaths
    if numPaths == 0:
        return paths

    todo = [(0, None)]
    while todo:
        index, parentPath = todo.pop()
        while True:
            if index >= numPaths:
                raise FormatException('path tree points at entry %d of %d' % (index, numPaths))
            pathIndex = pathIndices[index]
            if pathIndex >= numPaths:
                raise FormatException('path index %d out of range (%d paths)' % (pathIndex, numPaths))
            if paths[pathIndex] is not None:
                raise FormatException('path index %d is written twice' % pathIndex)

            if parentPath is None:
                path = parentPath = Path.absoluteRootPath()
            else:
                path = appendPathElement(parentPath, elementTokenIndices[index], tokens)
            paths[pathIndex] = path

            jump = PathJump.decode(jumps[index])
            if jump.kind == JumpKind.ChildAndSibling:
                todo.append((index + jump.offset, parentPath))
            if jump.hasChild:
                parentPath = path
            elif not jump.hasSibling:
                break
            index += 1

    if None in paths:
        raise FormatException('path index %d is never written' % paths.index(None))
    return paths


def getSpecType(code):
    try:
        return SpecType(code)
    except ValueError:
        raise UnsupportedFormatException('unknown spec type %d' % code) from None


class CrateFile:
    def __init__(self, data, registry=None):
        self.data = bytes(data)
        self.file = io.BytesIO(self.data)
        self.registry = registry if registry is not None else getDefaultRegistry()
        self.version = (0, 0, 0)
        self.toc = []
        self.tokens = []
        self.strings = []
        self.fields = []
        self.fsets = []
        self.paths = []
        self.specs = []

    @classmethod
    def fromPath(cls, filePath, registry=None):
        with open(filePath, 'rb') as file:
            data = file.read()
        logger.info('read %d bytes from %s', len(data), filePath)
        return cls(data, registry)

    def read(self):
        self.readBootStrap()
        self.readTableOfContents()
        self.readSections()
        return self.composeLayer()

    def checkCount(self, count, what):
        if count > MAX_INTS_PER_BYTE * len(self.data):
            raise FormatException('%s count %d is too large for a %d byte file' % (what, count, len(self.data)))

    def readBootStrap(self):
        self.file.seek(0)
        magic = self.file.read(len(CRATE_MAGIC))
        if magic != CRATE_MAGIC:
            raise MagicException('invalid crate magic %r' % magic)
        self.version = tuple(readBytes(self.file, 3))
        logger.info('USDC version: %d.%d.%d', *self.version)
        # version padding
        readBytes(self.file, 5)
        tocOffset = readInt(self.file, 8)
        if tocOffset < BOOTSTRAP_SIZE or tocOffset >= len(self.data):
            raise FormatException('table of contents offset 0x%08x outside of the file' % tocOffset)
        self.file.seek(tocOffset)

    def readSectionName(self):
        name = readBytes(self.file, SECTION_NAME_SIZE)
        p = name.find(0)
        if p >= 0:
            name = name[:p]
        try:
            return name.decode('utf-8')
        except UnicodeDecodeError as e:
            raise FormatException('invalid section name %r' % name) from e

    def readTableOfContents(self):
        self.toc = []
        numItems = readInt(self.file, 8)
        if numItems * TOC_ITEM_SIZE > len(self.data) - self.file.tell():
            raise FormatException('table of contents with %d sections does not fit in the file' % numItems)
        for i in range(numItems):
            name = self.readSectionName()
            start = readInt(self.file, 8)
            end = readInt(self.file, 8)
            section = TocSection(name, start, end)
            if section.start > len(self.data) or section.end > len(self.data):
                raise FormatException('section %s (0x%08x-0x%08x) outside of the file' % (
                    name, section.start, section.end))
            logger.debug('section #%d "%s" from 0x%08x to 0x%08x', i, name, section.start, section.end)
            self.toc.append(section)

    def getTableItem(self, sectionName):
        return next((section for section in self.toc if section.name == sectionName), None)

    def readSections(self):
        readers = {
            TOKENS: self.readTokensSection,
            STRINGS: self.readStringsSection,
            FIELDS: self.readFieldsSection,
            FIELDSETS: self.readFieldSetsSection,
            PATHS: self.readPathsSection,
            SPECS: self.readSpecsSection,
        }
        # paths and specs resolve names through the tokens
        sections = [s for s in self.toc if s.name == TOKENS]
        sections += [s for s in self.toc if s.name != TOKENS]
        for section in sections:
            reader = readers.get(section.name)
            if reader is None:
                logger.warning('skipping unrecognized section "%s"', section.name)
                continue
            self.file.seek(section.start)
            reader(section)
        logger.info('read %d tokens, %d strings, %d fields, %d field sets, %d paths, %d specs',
                    len(self.tokens), len(self.strings), len(self.fields),
                    len(self.fsets), len(self.paths), len(self.specs))

    def readTokensSection(self, section):
        numTokens = readInt(self.file, 8)
        uncompressedSize = readInt(self.file, 8)
        compressedSize = readInt(self.file, 8)
        if numTokens == 0:
            self.tokens = []
            return
        self.checkCount(numTokens, 'token')
        if uncompressedSize > MAX_LZ4_RATIO * compressedSize + 16:
            raise FormatException('%d compressed token bytes cannot hold %d bytes' % (compressedSize, uncompressedSize))
        buffer = lz4Decompress(readBytes(self.file, compressedSize), uncompressedSize)
        if len(buffer) == 0 or buffer[-1] != 0:
            raise FormatException('token data must end with a null byte')
        self.tokens = [self.registry.intern(s) for s in decodeStrings(buffer, numTokens)]

    def readStringsSection(self, section):
        numStrings = readInt(self.file, 8)
        self.checkCount(numStrings, 'string')
        self.strings = decodeInts(readBytes(self.file, numStrings * 4), numStrings, 4)

    def readFieldsSection(self, section):
        numFields = readInt(self.file, 8)
        self.checkCount(numFields, 'field')
        indices = readCompressedInts(self.file, numFields, 4)
        reps = readCompressedInts(self.file, numFields, 8)
        self.fields = [Field(index, ValueRep(rep)) for index, rep in zip(indices, reps)]

    def readFieldSetsSection(self, section):
        numSets = readInt(self.file, 8)
        self.checkCount(numSets, 'field set')
        self.fsets = readCompressedInts(self.file, numSets, 4)

    def readPathsSection(self, section):
        numPaths = readInt(self.file, 8)
        repeated = readInt(self.file, 8)
        if numPaths != repeated:
            raise FormatException('path count %d does not match repeated count %d' % (numPaths, repeated))
        self.checkCount(numPaths, 'path')
        pathIndices = readCompressedInts(self.file, numPaths, 4)
        elementTokenIndices = readCompressedInts(self.file, numPaths, 4, signed=True)
        jumps = readCompressedInts(self.file, numPaths, 4, signed=True)
        self.paths = buildPaths(pathIndices, elementTokenIndices, jumps, self.tokens)

    def readSpecsSection(self, section):
        numSpecs = readInt(self.file, 8)
        self.checkCount(numSpecs, 'spec')
        paths = readCompressedInts(self.file, numSpecs, 4)
        fsets = readCompressedInts(self.file, numSpecs, 4)
        types = readCompressedInts(self.file, numSpecs, 4)
        self.specs = [CrateSpec(p, f, getSpecType(t)) for p, f, t in zip(paths, fsets, types)]

    def getToken(self, index):
        return getTokenAt(self.tokens, index)

    def getPath(self, index):
        if index >= len(self.paths):
            raise FormatException('path index %d out of range (%d paths)' % (index, len(self.paths)))
        return self.paths[index]

    def getFieldSet(self, index):
        # files without FIELDSETS may only refer to the empty set at 0
        if len(self.fsets) == 0 and index == 0:
            return []
        if index >= len(self.fsets):
            raise FormatException('field set index %d out of range (%d entries)' % (index, len(self.fsets)))
        fset = []
        while index < len(self.fsets) and self.fsets[index] != FIELD_SET_TERMINATOR:
            fset.append(self.fsets[index])
            index += 1
        return fset

    def getFieldSetFields(self, index):
        fields = {}
        for fieldIndex in self.getFieldSet(index):
            if fieldIndex >= len(self.fields):
                raise FormatException('field index %d out of range (%d fields)' % (fieldIndex, len(self.fields)))
            field = self.fields[fieldIndex]
            fields[self.getToken(field.tokenIndex).text] = field.valueRep
        return fields

    def getSpecifier(self, rep):
        if rep is None:
            return SpecifierType.Def
        if rep.typeCode != ValueType.Specifier.value or not rep.isInline:
            logger.warning('ignoring specifier stored as %r', rep)
            return SpecifierType.Def
        try:
            return SpecifierType(rep.payload)
        except ValueError:
            raise FormatException('invalid specifier %d' % rep.payload) from None

    def getTypeName(self, rep):
        if rep is None:
            return ''
        if rep.typeCode != ValueType.token.value or not rep.isInline:
            logger.warning('ignoring type name stored as %r', rep)
            return ''
        return self.getToken(rep.payload).text

    def composePrim(self, layer, path, fields):
        if not path.isPrimPath():
            raise FormatException('prim spec at non-prim path %s' % path)
        parent = layer.getPrimAtPath(path.getParentPath())
        if parent is None:
            raise CompositionException('parent of prim %s is not in the layer' % path)
        specifier = self.getSpecifier(fields.get('specifier'))
        typeName = self.getTypeName(fields.get('typeName'))
        return layer.addSpec(PrimSpec(layer, parent, path.name, specifier, typeName, fields))

    def composeLayer(self):
        layer = Layer(self.registry)
        for spec in self.specs:
            path = self.getPath(spec.pathIndex)
            fields = self.getFieldSetFields(spec.fieldSetIndex)
            if path.isAbsoluteRootPath():
                # the root entry describes the layer's pseudo-root
                if spec.specType not in (SpecType.PseudoRoot, SpecType.Prim):
                    raise FormatException('%s spec at the absolute root path' % spec.specType.name)
                for name, value in fields.items():
                    layer.pseudoRoot.setField(name, value)
                continue
            if spec.specType == SpecType.PseudoRoot:
                raise FormatException('pseudo-root spec at %s' % path)
            if layer.hasSpec(path):
                raise FormatException('more than one spec at %s' % path)
            if spec.specType == SpecType.Prim:
                self.composePrim(layer, path, fields)
            else:
                logger.debug('recording %s spec at %s', spec.specType.name, path)
                layer.addSpec(Spec(layer, path, spec.specType, fields))
        return layer


class UsdcFileFormat:
    fileExtensions = ('usdc',)
    primaryFileExtension = 'usdc'
    isPackage = False
    supportsReading = True
    supportsWriting = False
    supportsEditing = False

    def canRead(self, filePath):
        ext = os.path.splitext(filePath)[1].lower()
        return ext[1:] in self.fileExtensions

    def read(self, filePath, registry=None):
        if not self.canRead(filePath):
            raise UnsupportedFormatException('%s is not a .%s file' % (filePath, self.primaryFileExtension))
        return CrateFile.fromPath(filePath, registry).read()
