"""Request handling: the per-request state machine and the host contract."""

import asyncio
import logging
from contextlib import ExitStack
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, MutableMapping, Optional

from dali_server.chain import (
    PatternBuffer,
    ResponseChain,
    ZeroSource,
    assemble_pattern,
    assemble_timed,
    assemble_zero,
    resolve_range,
)
from dali_server.config import PayloadConfig, ResolvedScope
from dali_server.errors import AllocationFailure, DaliError, HeaderSendFailure, RangeNotSatisfiable
from dali_server.planner import PayloadPlan, Strategy, plan_payload
from dali_server.stats import ServerStats
from dali_server.timing import BodyDrainTimer, Timestamp, TimingReport, monotonic

logger = logging.getLogger("dali-server")

CONTENT_TYPE = "application/octet-stream"
CONTEXT_KEY = "dali.context"


class RequestState(Enum):
    CREATED = "created"
    CONFIG_RESOLVED = "config-resolved"
    PLAN_BUILT = "plan-built"
    CHAIN_ASSEMBLED = "chain-assembled"
    AWAITING_BODY = "awaiting-body"
    BODY_DRAINED = "body-drained"
    HEADERS_SENT = "headers-sent"
    BODY_SENT = "body-sent"
    ERRORED = "errored"


TERMINAL_STATES = {RequestState.BODY_SENT, RequestState.ERRORED}


class SendResult(Enum):
    OK = "ok"
    ERROR = "error"
    HEADER_ONLY = "header-only"


class Exchange:
    """Host side of one request.

    Subclasses provide body access and the send primitives. Cleanups
    registered with ``add_cleanup`` run exactly once, when the exchange's
    ``async with`` block exits, whichever way the request ends.
    """

    # Key the request context is stored under in ``storage``
    context_key: Any = CONTEXT_KEY

    def __init__(self, path: str, method: str = "GET"):
        self.path = path
        self.method = method
        self.storage: MutableMapping[str, Any] = {}
        self._cleanup = ExitStack()

    async def __aenter__(self) -> "Exchange":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False

    def add_cleanup(self, callback: Callable, *args) -> None:
        self._cleanup.callback(callback, *args)

    def close(self) -> None:
        self._cleanup.close()

    @property
    def has_body(self) -> bool:
        return False

    @property
    def byte_range(self) -> Optional[slice]:
        return None

    async def discard_body(self) -> int:
        raise NotImplementedError

    async def send_headers(self, status: int, headers: Dict[str, str]) -> SendResult:
        raise NotImplementedError

    async def send_chain(self, chain: ResponseChain) -> None:
        raise NotImplementedError


@dataclass
class RequestContext:
    """Everything one request owns."""

    path: str
    state: RequestState = RequestState.CREATED
    history: List[RequestState] = field(default_factory=lambda: [RequestState.CREATED])
    scope: Optional[ResolvedScope] = None
    plan: Optional[PayloadPlan] = None
    chain: Optional[ResponseChain] = None
    device: Optional[ZeroSource] = None
    report: Optional[TimingReport] = None
    status: Optional[int] = None
    bytes_sent: int = 0
    error: Optional[BaseException] = None

    @property
    def length(self) -> Optional[int]:
        return self.scope.length if self.scope else None

    @property
    def strategy(self) -> Optional[Strategy]:
        return self.scope.strategy if self.scope else None

    def advance(self, state: RequestState) -> None:
        if self.state in TERMINAL_STATES:
            raise RuntimeError(f"Request already finished ({self.state.value}), cannot move to {state.value}")
        self.state = state
        self.history.append(state)

    def fail(self, error: BaseException) -> None:
        self.error = error
        if self.state not in TERMINAL_STATES:
            self.advance(RequestState.ERRORED)


class PayloadHandler:
    """Builds and sends the payload response for each request."""

    def __init__(
        self,
        config: PayloadConfig,
        pattern: PatternBuffer,
        clock: Callable[[], Timestamp] = monotonic,
        device_factory: Callable[[], ZeroSource] = ZeroSource,
        stats: Optional[ServerStats] = None,
    ):
        config.finalize()
        self.config = config
        self.pattern = pattern
        self.timer = BodyDrainTimer(clock)
        self.device_factory = device_factory
        self.stats = stats

    async def handle(self, exchange: Exchange) -> RequestContext:
        ctx = RequestContext(path=exchange.path)
        exchange.storage[exchange.context_key] = ctx
        try:
            await self._respond(exchange, ctx)
        except DaliError as e:
            self._fail(exchange, ctx, e.kind, e)
            if not isinstance(e, HeaderSendFailure):
                await self._send_error(exchange, ctx, e.status)
        except OSError as e:
            # Body send or device read; headers are already out, so not retried
            self._fail(exchange, ctx, f"BodySendFailure ({type(e).__name__})", e)
        except asyncio.CancelledError as e:
            logger.warning(f"Request for {ctx.path} aborted at stage {ctx.state.value}")
            ctx.fail(e)
            raise
        finally:
            if self.stats is not None:
                self.stats.record(ctx)
        return ctx

    @staticmethod
    def _fail(exchange: Exchange, ctx: RequestContext, kind: str, error: BaseException) -> None:
        stage = ctx.state.value
        ctx.fail(error)
        strategy = ctx.strategy.value if ctx.strategy else None
        logger.critical(
            f"{kind} on {exchange.method} {ctx.path} "
            f"(length={ctx.length}, strategy={strategy}, stage={stage}): {error}"
        )

    async def _respond(self, exchange: Exchange, ctx: RequestContext) -> None:
        ctx.scope = self.config.resolve(exchange.path)
        ctx.advance(RequestState.CONFIG_RESOLVED)
        length, strategy = ctx.scope.length, ctx.scope.strategy

        ctx.plan = plan_payload(length, strategy)
        ctx.advance(RequestState.PLAN_BUILT)

        if strategy is Strategy.ZERO:
            ctx.device = self.device_factory().open()
            exchange.add_cleanup(ctx.device.close)
            ctx.chain = self._assemble(assemble_zero, ctx.plan, ctx.device)
            ctx.advance(RequestState.CHAIN_ASSEMBLED)
        elif strategy is Strategy.PATTERN:
            ctx.chain = self._assemble(assemble_pattern, ctx.plan, self.pattern)
            ctx.advance(RequestState.CHAIN_ASSEMBLED)

        if exchange.has_body:
            ctx.advance(RequestState.AWAITING_BODY)
        ctx.report = await self.timer.drain(exchange)
        ctx.advance(RequestState.BODY_DRAINED)

        if strategy is Strategy.TIMED:
            report = ctx.report.to_json()
            ctx.plan = plan_payload(length, strategy, prefix_length=ctx.report.encoded_length())
            ctx.chain = self._assemble(assemble_timed, ctx.plan, report, self.pattern)
            ctx.advance(RequestState.CHAIN_ASSEMBLED)

        total = ctx.plan.effective_length
        chain = ctx.chain
        status = 200
        headers = {"Content-Type": CONTENT_TYPE}
        if chain.allow_ranges:
            headers["Accept-Ranges"] = "bytes"
            rng = exchange.byte_range
            if rng is not None:
                try:
                    start, stop = resolve_range(rng, total)
                except RangeNotSatisfiable:
                    headers["Content-Range"] = f"bytes */{total}"
                    headers["Content-Length"] = "0"
                    await self._send_headers(exchange, ctx, 416, headers)
                    ctx.advance(RequestState.BODY_SENT)
                    return
                chain = chain.window(start, stop)
                status = 206
                headers["Content-Range"] = f"bytes {start}-{stop - 1}/{total}"
        headers["Content-Length"] = str(chain.total_length)

        logger.debug(
            f"Sending {chain.total_length} byte {strategy.value} response for {ctx.path} "
            f"({len(chain)} buffer(s), configured {length})"
        )
        if not await self._send_headers(exchange, ctx, status, headers):
            # HEAD: the headers are the whole response
            ctx.advance(RequestState.BODY_SENT)
            return

        await exchange.send_chain(chain)
        ctx.bytes_sent = chain.total_length
        ctx.advance(RequestState.BODY_SENT)

    async def _send_headers(self, exchange: Exchange, ctx: RequestContext, status: int, headers: Dict[str, str]) -> bool:
        """Send headers; return True when a body should follow."""
        result = await exchange.send_headers(status, headers)
        if result is SendResult.ERROR:
            raise HeaderSendFailure(f"Transport failed to send {status} headers")
        ctx.status = status
        ctx.advance(RequestState.HEADERS_SENT)
        return result is SendResult.OK and status in (200, 206)

    async def _send_error(self, exchange: Exchange, ctx: RequestContext, status: int) -> None:
        headers = {"Content-Type": CONTENT_TYPE, "Content-Length": "0"}
        try:
            result = await exchange.send_headers(status, headers)
        except ConnectionError as e:
            logger.error(f"Could not send {status} for {ctx.path}: {e}")
            return
        if result is not SendResult.ERROR:
            ctx.status = status

    @staticmethod
    def _assemble(assembler: Callable[..., ResponseChain], *args) -> ResponseChain:
        try:
            return assembler(*args)
        except MemoryError as e:
            raise AllocationFailure(f"Could not build response chain: {e}") from e
