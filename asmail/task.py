"""
Combinators for composing asyncio awaitables the way the request layer
needs: sequential binding, concurrent fan-out/join, fire-and-forget, memoized
results and error interception.

Every awaitable here resolves exactly once, either with a value or with an
exception. A synchronous exception raised while computing a binding and an
exception delivered by an awaited binding travel the same way: they become
the result of the composed awaitable. Nothing here cancels anything; if a
caller stops caring about a result the I/O behind it still runs to
completion.
"""

# system imports
#
import asyncio
import inspect
import logging
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Sequence,
    Set,
    Tuple,
    Type,
)

logger = logging.getLogger("asmail.task")

Binding = Tuple[str, Callable[..., Any]]

# Tasks started with `run()`. We hold a reference to them until they are done
# so they are not garbage collected while still running.
#
RUNNING_TASKS: Set[asyncio.Task] = set()


####################################################################
#
async def _resolve(value: Any) -> Any:
    """
    If `value` is awaitable, await it and return its result. Otherwise
    return it as is.
    """
    if inspect.isawaitable(value):
        return await value
    return value


####################################################################
#
async def sequence(
    bindings: Sequence[Binding], body: Callable[..., Any]
) -> Any:
    """
    Evaluate each binding in order. A binding is a name and a callable. The
    callable is called with the values bound so far as keyword arguments and
    may return a plain value or an awaitable (which is awaited.)

    The first exception, raised or delivered, stops the evaluation of any
    later bindings and is the result of the sequence.

    Finally `body` is called with all the bound values and its result
    (awaited if need be) is our result.
    """
    values: Dict[str, Any] = {}
    for name, func in bindings:
        values[name] = await _resolve(func(**values))
    return await _resolve(body(**values))


####################################################################
#
async def concurrent(
    bindings: Mapping[str, Awaitable[Any]], body: Callable[..., Any]
) -> Any:
    """
    Start all of the awaitables in `bindings` at once and wait for all of
    them to finish. If any of them failed the first failure to be observed
    is raised (the other results are discarded.) Otherwise `body` is called
    with the results as keyword arguments.
    """
    if not bindings:
        return await _resolve(body())

    names = list(bindings.keys())
    futures = [asyncio.ensure_future(aw) for aw in bindings.values()]
    completed: List[asyncio.Future] = []
    for fut in futures:
        fut.add_done_callback(completed.append)

    await asyncio.wait(futures)

    # Look at the results in the order they completed. Retrieving every
    # exception marks them all as observed.
    #
    failure: Optional[BaseException] = None
    for fut in completed:
        if fut.cancelled():
            exc: Optional[BaseException] = asyncio.CancelledError()
        else:
            exc = fut.exception()
        if exc is not None and failure is None:
            failure = exc
    if failure is not None:
        raise failure

    values = {name: fut.result() for name, fut in zip(names, futures)}
    return await _resolve(body(**values))


####################################################################
#
def _run_done(task: asyncio.Task):
    """
    Done callback for tasks started with `run()`. Nobody is waiting on the
    task so a failure is handed to the event loop's exception handler.
    """
    RUNNING_TASKS.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        task.get_loop().call_exception_handler(
            {
                "message": f"Unhandled exception in task {task.get_name()}",
                "exception": exc,
                "task": task,
            }
        )


####################################################################
#
def run(aw: Awaitable[Any], name: Optional[str] = None) -> asyncio.Task:
    """
    Drive an awaitable for its side effects. This returns immediately; an
    unhandled exception is reported when the task finishes, not here.
    """
    task = asyncio.ensure_future(aw)
    if name is not None:
        task.set_name(name)
    RUNNING_TASKS.add(task)
    task.add_done_callback(_run_done)
    return task


##################################################################
##################################################################
#
class MemoSlot:
    """
    Holds the state of a memoized computation: empty, pending (with a list
    of waiters) or a cached value.
    """

    ##################################################################
    #
    def __init__(self, name: str = "memo"):
        self.name = name
        self.has_value = False
        self.value: Any = None
        self.pending = False
        self.waiters: List[asyncio.Future] = []

    ##################################################################
    #
    def __repr__(self):
        if self.has_value:
            state = "cached"
        elif self.pending:
            state = f"pending, {len(self.waiters)} waiters"
        else:
            state = "empty"
        return f"<MemoSlot {self.name}: {state}>"

    ##################################################################
    #
    def invalidate(self):
        """
        Forget a cached value. A computation that is in flight is not
        affected; it will store its result when it finishes.
        """
        self.has_value = False
        self.value = None


####################################################################
#
async def memoize(slot: MemoSlot, factory: Callable[[], Awaitable[Any]]) -> Any:
    """
    Return the value cached in `slot`, computing it with `factory()` if
    there is none.

    While the factory is running every other caller waits on the same
    result. A successful result stays cached until `slot.invalidate()`. A
    failure is raised to every waiter and is NOT cached, the next call will
    run the factory again.
    """
    if slot.has_value:
        return slot.value

    if slot.pending:
        waiter = asyncio.get_running_loop().create_future()
        slot.waiters.append(waiter)
        return await waiter

    slot.pending = True
    try:
        value = await factory()
    except BaseException as exc:
        logger.debug("%r: computation failed: %s", slot, exc)
        waiters, slot.waiters = slot.waiters, []
        slot.pending = False
        for waiter in waiters:
            if waiter.done():
                continue
            if isinstance(exc, asyncio.CancelledError):
                waiter.cancel()
            else:
                waiter.set_exception(exc)
        raise

    slot.value = value
    slot.has_value = True
    slot.pending = False
    waiters, slot.waiters = slot.waiters, []
    for waiter in waiters:
        if not waiter.done():
            waiter.set_result(value)
    return value


####################################################################
#
async def intercept(
    aw: Awaitable[Any],
    handlers: Mapping[Type[BaseException], Callable[[Any], Any]],
) -> Any:
    """
    Await `aw`. If it fails with an exception that is an instance of one of
    the keys of `handlers` the matching handler (first match in mapping order)
    is called with the exception and what it returns (awaited if need be)
    becomes our result. Any other exception propagates unchanged.
    """
    try:
        return await aw
    except Exception as exc:
        for exc_class, handler in handlers.items():
            if isinstance(exc, exc_class):
                return await _resolve(handler(exc))
        raise
