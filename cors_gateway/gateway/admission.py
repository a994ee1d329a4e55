import logging
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Callable, FrozenSet, Mapping, Optional, Tuple

from cors_gateway import vars as settings
from cors_gateway.gateway.context import RequestContext
from cors_gateway.gateway.errors import ErrorKind, GatewayRejection
from cors_gateway.gateway.rate_limit import TokenBucketRateLimiter

logger = logging.getLogger("uvicorn.error")

RateLimiter = Callable[[RequestContext], bool]


@dataclass(frozen=True)
class AdmissionConfig:
    """Process-wide admission and header policy, loaded once at startup."""

    origin_blacklist: FrozenSet[str] = frozenset()
    origin_whitelist: FrozenSet[str] = frozenset()
    required_headers: Tuple[str, ...] = ()
    headers_to_remove: Tuple[str, ...] = ()
    headers_to_set: Mapping[str, str] = field(
        default_factory=lambda: MappingProxyType({})
    )
    rate_limiter: Optional[RateLimiter] = None
    redirect_same_origin_only: bool = False

    def __post_init__(self):
        # Accept plain lists/dicts from callers but store read-only copies
        object.__setattr__(self, "origin_blacklist", frozenset(self.origin_blacklist))
        object.__setattr__(self, "origin_whitelist", frozenset(self.origin_whitelist))
        object.__setattr__(self, "required_headers", tuple(self.required_headers))
        object.__setattr__(self, "headers_to_remove", tuple(self.headers_to_remove))
        object.__setattr__(
            self, "headers_to_set", MappingProxyType(dict(self.headers_to_set))
        )

    @classmethod
    def from_env(cls) -> "AdmissionConfig":
        rate_limiter = None
        if settings.RATE_LIMIT_PER_SECOND > 0:
            rate_limiter = TokenBucketRateLimiter(
                requests_per_second=settings.RATE_LIMIT_PER_SECOND,
                burst_size=settings.RATE_LIMIT_BURST,
            )
        return cls(
            origin_blacklist=settings.ORIGIN_BLACKLIST,
            origin_whitelist=settings.ORIGIN_WHITELIST,
            required_headers=settings.REQUIRE_HEADERS,
            headers_to_remove=settings.REMOVE_HEADERS,
            headers_to_set=settings.SET_HEADERS,
            rate_limiter=rate_limiter,
            redirect_same_origin_only=settings.REDIRECT_SAME_ORIGIN,
        )


class Admission(str, Enum):
    PREFLIGHT = "preflight"
    ADMITTED = "admitted"


class AdmissionPipeline:
    """
    Pre-forwarding checks for a single HTTP request.

    Stages run in a fixed order and the first failing stage raises a
    GatewayRejection: preflight short-circuit, origin blacklist, origin
    whitelist, required headers, rate limit.
    """

    def __init__(self, config: AdmissionConfig):
        self.config = config

    def admit(self, context: RequestContext) -> Admission:
        if context.method == "OPTIONS":
            return Admission.PREFLIGHT

        config = self.config
        if config.origin_blacklist and context.origin in config.origin_blacklist:
            logger.info(f"[Admission] Blacklisted origin rejected: {context.origin}")
            raise GatewayRejection(ErrorKind.ORIGIN_BLACKLISTED)

        if config.origin_whitelist and context.origin not in config.origin_whitelist:
            logger.info(f"[Admission] Origin not whitelisted: {context.origin!r}")
            raise GatewayRejection(ErrorKind.ORIGIN_NOT_WHITELISTED)

        for name in config.required_headers:
            if not context.headers.get(name.lower()):
                logger.debug(f"[Admission] Missing required header: {name}")
                raise GatewayRejection(ErrorKind.MISSING_REQUIRED_HEADER)

        limiter = config.rate_limiter
        if limiter is not None and not limiter(context):
            logger.info(
                f"[Admission] Rate limit exceeded for {context.client_address}"
            )
            headers = {}
            retry_after = getattr(limiter, "retry_after", None)
            if retry_after is not None:
                seconds = retry_after(context)
                if seconds:
                    headers["retry-after"] = str(seconds)
            raise GatewayRejection(ErrorKind.RATE_LIMIT_EXCEEDED, headers=headers)

        return Admission.ADMITTED
