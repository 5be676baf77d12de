import asyncio
import collections.abc
import contextlib
import logging
import typing

import aiohttp

import ocidist.errors as oe

logger = logging.getLogger(__name__)

T = typing.TypeVar('T')


def urljoin(*parts):
    if len(parts) == 1:
        return parts[0]
    first = parts[0]
    last = parts[-1]
    middle = parts[1:-1]

    first = first.rstrip('/')
    middle = list(map(lambda s: s.strip('/'), middle))
    last = last.lstrip('/')

    return '/'.join([first] + middle + [last])


@contextlib.contextmanager
def transport_errors(
    operation: str,
    reference=None,
):
    '''
    ctx-mgr translating aiohttp's (and asyncio's) exceptions into TransportError or
    TransportTimeout (both carrying the given context)
    '''
    try:
        yield
    except TimeoutError as te:
        # aiohttp.ServerTimeoutError is both a TimeoutError and a ClientError
        raise oe.TransportTimeout(
            f'timeout: {te}',
            operation=operation,
            reference=reference,
        ) from te
    except aiohttp.ClientError as ce:
        raise oe.TransportError(
            f'{type(ce).__name__}: {ce}',
            operation=operation,
            reference=reference,
        ) from ce


async def gather(
    coros: collections.abc.Iterable[collections.abc.Awaitable[T]],
) -> list[T]:
    '''
    runs the given awaitables concurrently and returns their results in submission order.

    unlike asyncio.gather, the first failure cancels all remaining awaitables (also freeing
    any resources they hold). The first failure is re-raised as is (i.e. not wrapped into an
    ExceptionGroup).
    '''
    try:
        async with asyncio.TaskGroup() as tg:
            tasks = [tg.create_task(coro) for coro in coros]
    except ExceptionGroup as eg:
        exc = eg.exceptions[0]
        if len(eg.exceptions) > 1:
            logger.debug(f'{len(eg.exceptions)} concurrent tasks failed, re-raising first')
        raise exc from eg

    return [task.result() for task in tasks]
