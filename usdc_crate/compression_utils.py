import lz4.block

from usdc_crate.exceptions import FormatException, UnsupportedFormatException


# Byte widths of the small, medium and large deltas for each target width.
DELTA_SIZES = {
    4: (1, 2, 4),
    8: (2, 4, 8),
}


def decodeStrings(data, count, encoding='utf-8'):
    strings = []
    data = bytes(data)
    start = 0
    while count > 0:
        p = data.find(0, start)
        if p < 0:
            raise FormatException('string table ends with %d strings missing' % count)
        try:
            strings.append(data[start:p].decode(encoding))
        except UnicodeDecodeError as e:
            raise FormatException('string %d is not valid %s' % (len(strings), encoding)) from e
        start = p + 1
        count -= 1
    return strings


def decodeInts(data, count, size, byteorder='little', signed=False):
    if count * size > len(data):
        raise FormatException('expected %d integers of %d bytes, got %d bytes' % (count, size, len(data)))
    ints = []
    for i in range(count):
        value = int.from_bytes(data[i*size:i*size + size], byteorder, signed=signed)
        ints.append(value)
    return ints


def worstCaseBlockLength(srcLen):
    return srcLen + (srcLen // 255) + 16


def getMaxEncodedBufferSize(numInts, intSize):
    if numInts < 1:
        return 0
    return intSize + ((numInts * 2 + 7) // 8) + (numInts * intSize)


def getMaxCompressedBufferSize(numInts, intSize):
    # leading chunk count byte + worst case raw block
    return 1 + worstCaseBlockLength(getMaxEncodedBufferSize(numInts, intSize))


def toSigned(n, size):
    bits = size * 8
    n = n & ((1 << bits) - 1)
    sign = 1 << (bits - 1)
    return (n ^ sign) - sign


def narrowInt(n, size, signed):
    if signed:
        return toSigned(n, size)
    return n & ((1 << (size * 8)) - 1)


def lz4Decompress(src, uncompressedSize):
    if len(src) == 0:
        raise FormatException('compressed block is empty')
    numChunks = src[0]
    if numChunks != 0:
        raise UnsupportedFormatException(
            'compressed block has %d chunks, only single chunk blocks are supported' % numChunks)
    try:
        return lz4.block.decompress(bytes(src[1:]), uncompressed_size=uncompressedSize)
    except (lz4.block.LZ4BlockError, ValueError, OverflowError) as e:
        raise FormatException(
            'cannot decompress %d bytes into %d bytes' % (len(src) - 1, uncompressedSize)) from e


def decodeCompressedInts(data, numInts, intSize=4, signed=False):
    '''Decode integers packed by the crate integer coding.

    The buffer holds a common value, then 2-bit codes (four per byte,
    earliest element in the low bits), then the variable width deltas.
    Every element is the running sum of all the deltas up to it: code 0
    adds the common value, codes 1, 2 and 3 add the next small, medium
    or large signed delta. The running sum wraps at intSize bytes and is
    stored as the target type by reinterpretation.
    '''
    if intSize not in DELTA_SIZES:
        raise ValueError('unsupported integer size %d' % intSize)
    deltaSizes = DELTA_SIZES[intSize]
    numCodes = (numInts * 2 + 7) // 8
    if len(data) < intSize + numCodes:
        raise FormatException('compressed integers need %d header bytes, got %d' % (intSize + numCodes, len(data)))
    data = memoryview(data)
    commonValue = int.from_bytes(data[:intSize], 'little', signed=True)
    codes = data[intSize:intSize + numCodes]
    vints = data[intSize + numCodes:]
    values = []
    preValue = 0
    vp = 0
    for codeByte in codes:
        for shift in range(min(4, numInts - len(values))):
            code = (codeByte >> (2 * shift)) & 0x3
            if code == 0:
                preValue += commonValue
            else:
                size = deltaSizes[code - 1]
                if vp + size > len(vints):
                    raise FormatException(
                        'compressed integers end after %d of %d values' % (len(values), numInts))
                preValue += int.from_bytes(vints[vp:vp+size], 'little', signed=True)
                vp += size
            preValue = toSigned(preValue, intSize)
            values.append(narrowInt(preValue, intSize, signed))
    return values


def usdInt32Decompress(data, numInts, signed=False):
    return decodeCompressedInts(data, numInts, 4, signed)


def usdInt64Decompress(data, numInts, signed=False):
    return decodeCompressedInts(data, numInts, 8, signed)
