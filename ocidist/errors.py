'''
exceptions raised by ocidist

every public operation either returns its result or raises one of the exceptions defined
here. Context (operation, reference, http-status) is attached as keyword-arguments and
rendered into the exception's string-representation.
'''


class OciError(Exception):
    def __init__(
        self,
        *args,
        operation: str=None,
        reference=None,
        status: int=None,
    ):
        super().__init__(*args)
        self.operation = operation
        self.reference = reference
        self.status = status

    def __str__(self):
        msg = super().__str__()

        ctx = []
        if self.operation:
            ctx.append(f'operation={self.operation}')
        if self.reference:
            ctx.append(f'reference={str(self.reference)}')
        if self.status:
            ctx.append(f'status={self.status}')

        if not ctx:
            return msg

        return f'{msg} ({", ".join(ctx)})'


class InvalidReference(OciError, ValueError):
    pass


class AuthenticationFailed(OciError):
    pass


class DigestMismatch(OciError):
    def __init__(
        self,
        *args,
        expected: str=None,
        actual: str=None,
        **kwargs,
    ):
        if not args:
            args = (f'digest mismatch: {expected=} {actual=}',)
        super().__init__(*args, **kwargs)
        self.expected = expected
        self.actual = actual


class SizeMismatch(DigestMismatch):
    '''
    raised if the amount of received octets differs from the size declared in a descriptor.
    `expected` and `actual` hold the sizes.
    '''
    def __init__(self, *args, expected: int, actual: int, **kwargs):
        if not args:
            args = (f'size mismatch: {expected=} {actual=}',)
        super().__init__(*args, expected=expected, actual=actual, **kwargs)


class NotFound(OciError):
    pass


class UploadSessionInvalid(OciError):
    pass


class TransportError(OciError):
    pass


class TransportTimeout(TransportError):
    pass


class UnsupportedMediaType(OciError):
    pass
