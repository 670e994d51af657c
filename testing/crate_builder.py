import io
from collections import Counter

import lz4.block

from usdc_crate.compression_utils import DELTA_SIZES, toSigned
from usdc_crate.value_types import ARRAY_BIT, INLINE_BIT, COMPRESSED_BIT, PAYLOAD_MASK

FIELD_SET_TERMINATOR = 0xFFFFFFFF


def writeInt(file, value, size, byteorder='little', signed=False):
    file.write(value.to_bytes(size, byteorder=byteorder, signed=signed))


def lz4Compress(src):
    return b'\x00' + lz4.block.compress(bytes(src), store_size=False)


def fitsSigned(value, size):
    limit = 1 << (size * 8 - 1)
    return -limit <= value < limit


def usdIntCompress(values, intSize=4):
    deltas = []
    preValue = 0
    for value in values:
        value = toSigned(value, intSize)
        deltas.append(toSigned(value - preValue, intSize))
        preValue = value
    commonValue = Counter(deltas).most_common()[0][0] if deltas else 0
    codes = bytearray((len(values) * 2 + 7) // 8)
    vints = bytearray()
    for i, delta in enumerate(deltas):
        code = 0
        if delta != commonValue:
            code = 3
            for c, size in enumerate(DELTA_SIZES[intSize][:2], 1):
                if fitsSigned(delta, size):
                    code = c
                    break
            vints += delta.to_bytes(DELTA_SIZES[intSize][code - 1], 'little', signed=True)
        codes[i // 4] |= code << ((i % 4) * 2)
    return commonValue.to_bytes(intSize, 'little', signed=True) + bytes(codes) + bytes(vints)


def writeCompressedInts(file, values, intSize=4):
    buffer = lz4Compress(usdIntCompress(values, intSize))
    writeInt(file, len(buffer), 8)
    file.write(buffer)


def makeRep(vType, payload, array=False, inline=True, compressed=False):
    rep = (vType.value << 48) | (payload & PAYLOAD_MASK)
    if array:
        rep |= ARRAY_BIT
    if inline:
        rep |= INLINE_BIT
    if compressed:
        rep |= COMPRESSED_BIT
    return rep


def flattenFieldSets(fieldSets):
    fsets = []
    for fset in fieldSets:
        fsets += fset
        fsets.append(FIELD_SET_TERMINATOR)
    return fsets


class CrateBuilder:
    '''Writes crate files section by section for the reader tests.'''

    def __init__(self, version=(0, 8, 0), magic=b'PXR-USDC'):
        self.file = io.BytesIO()
        self.version = version
        self.magic = magic
        self.toc = []
        self.writeBootStrap()

    def writeBootStrap(self, tocOffset=0):
        self.file.seek(0)
        self.file.write(self.magic)
        self.file.write(bytes(self.version) + bytes(5))
        writeInt(self.file, tocOffset, 8)
        self.file.write(bytes(64))

    def addSection(self, name, start):
        self.toc.append((name, start, self.file.tell()))

    def writeSection(self, name, data):
        start = self.file.tell()
        self.file.write(data)
        self.addSection(name, start)

    def writeTokensSection(self, tokens, buffer=None):
        start = self.file.tell()
        if buffer is None:
            buffer = b''.join(token.encode('utf-8') + b'\0' for token in tokens)
        writeInt(self.file, len(tokens), 8)
        writeInt(self.file, len(buffer), 8)
        buffer = lz4Compress(buffer)
        writeInt(self.file, len(buffer), 8)
        self.file.write(buffer)
        self.addSection('TOKENS', start)

    def writeStringsSection(self, strings):
        start = self.file.tell()
        writeInt(self.file, len(strings), 8)
        for i in strings:
            writeInt(self.file, i, 4)
        self.addSection('STRINGS', start)

    def writeFieldsSection(self, fields):
        start = self.file.tell()
        writeInt(self.file, len(fields), 8)
        writeCompressedInts(self.file, [token for token, rep in fields])
        writeCompressedInts(self.file, [rep for token, rep in fields], 8)
        self.addSection('FIELDS', start)

    def writeFieldSetsSection(self, fsets):
        start = self.file.tell()
        writeInt(self.file, len(fsets), 8)
        writeCompressedInts(self.file, fsets)
        self.addSection('FIELDSETS', start)

    def writePathsSection(self, paths, tokens, jumps, repeatedCount=None):
        start = self.file.tell()
        writeInt(self.file, len(paths), 8)
        writeInt(self.file, len(paths) if repeatedCount is None else repeatedCount, 8)
        writeCompressedInts(self.file, paths)
        writeCompressedInts(self.file, tokens)
        writeCompressedInts(self.file, jumps)
        self.addSection('PATHS', start)

    def writeSpecsSection(self, specs):
        start = self.file.tell()
        writeInt(self.file, len(specs), 8)
        writeCompressedInts(self.file, [path for path, fset, sType in specs])
        writeCompressedInts(self.file, [fset for path, fset, sType in specs])
        writeCompressedInts(self.file, [sType for path, fset, sType in specs])
        self.addSection('SPECS', start)

    def finish(self):
        self.file.seek(0, io.SEEK_END)
        tocStart = self.file.tell()
        writeInt(self.file, len(self.toc), 8)
        for name, start, end in self.toc:
            self.file.write(name.encode('utf-8'))
            self.file.write(bytes(16 - len(name)))
            writeInt(self.file, start, 8)
            writeInt(self.file, end, 8)
        self.writeBootStrap(tocStart)
        return self.file.getvalue()


def buildCrate(tokens, paths=None, specs=None, fields=None, fieldSets=None):
    '''Build a complete crate file from already indexed tables.

    paths is a (pathIndices, elementTokenIndices, jumps) triple and specs a
    list of (pathIndex, fieldSetIndex, specType) tuples.
    '''
    builder = CrateBuilder()
    builder.writeTokensSection(tokens)
    if fields is not None:
        builder.writeFieldsSection(fields)
    if fieldSets is not None:
        builder.writeFieldSetsSection(flattenFieldSets(fieldSets))
    if paths is not None:
        builder.writePathsSection(*paths)
    if specs is not None:
        builder.writeSpecsSection(specs)
    return builder.finish()
