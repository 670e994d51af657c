class CrateException(Exception):
    '''Base class of every error raised while reading a crate file.

    The message describes where the decoding stopped; nothing read before
    the error is handed back to the caller.
    '''

    def __init__(self, message=''):
        self.message = message
        super().__init__(message)


class FormatException(CrateException):
    '''The data contradicts the crate format (corrupt or truncated file).'''
    pass


class MagicException(FormatException):
    pass


class CompositionException(FormatException):
    '''A spec refers to a parent that is not in the layer yet.'''
    pass


class UnsupportedFormatException(CrateException):
    '''The data is well formed but uses a feature this reader does not
    implement, e.g. multi-chunk compressed blocks.'''
    pass
