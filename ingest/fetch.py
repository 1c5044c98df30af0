from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field

import httpx
import structlog

from ingest.errors import SourceError
from ingest.sources import SourceAdapter
from normalize.alert import RawCandidate


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class SourceResult:
    source: str
    ok: bool
    candidates: list[RawCandidate] = field(default_factory=list)
    reason: str | None = None
    elapsed_ms: int = 0
    status_code: int | None = None

    def to_dict(self) -> dict:
        return {
            "source": self.source,
            "ok": self.ok,
            "count": len(self.candidates),
            "reason": self.reason,
            "elapsedMs": self.elapsed_ms,
        }


async def fetch_source(
    client: httpx.AsyncClient,
    adapter: SourceAdapter,
    *,
    user_agent: str,
    timeout_seconds: float,
    city: str | None = None,
) -> SourceResult:
    """Run one adapter and turn every failure into a tagged result.

    Nothing raised by the adapter escapes, so sibling fetches gathered
    alongside this one are never cancelled by it.
    """
    timeout_seconds = adapter.timeout_seconds or timeout_seconds
    started = time.monotonic()

    def _elapsed() -> int:
        return int((time.monotonic() - started) * 1000)

    def _failed(reason: str, status_code: int | None = None) -> SourceResult:
        logger.warning(
            "source_fetch_failed",
            source=adapter.source,
            reason=reason,
            city=city,
            elapsed_ms=_elapsed(),
        )
        return SourceResult(
            source=adapter.source,
            ok=False,
            reason=reason,
            elapsed_ms=_elapsed(),
            status_code=status_code,
        )

    try:
        candidates = await asyncio.wait_for(
            adapter.fetch(
                client,
                user_agent=user_agent,
                timeout_seconds=timeout_seconds,
                city=city,
            ),
            timeout=timeout_seconds,
        )
    except (TimeoutError, asyncio.TimeoutError):
        return _failed("timeout")
    except SourceError as exc:
        return _failed(exc.reason, getattr(exc, "status_code", None))
    except httpx.TimeoutException:
        return _failed("timeout")
    except httpx.RequestError as exc:
        return _failed(f"request_error:{exc.__class__.__name__}")
    except Exception:
        logger.exception("source_adapter_crashed", source=adapter.source)
        return _failed("parse_error")

    logger.info(
        "source_fetched",
        source=adapter.source,
        candidates=len(candidates),
        city=city,
        elapsed_ms=_elapsed(),
    )
    return SourceResult(
        source=adapter.source,
        ok=True,
        candidates=candidates,
        elapsed_ms=_elapsed(),
        status_code=200,
    )
