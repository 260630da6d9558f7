"""Per-caller rate limiting as a FastAPI dependency."""

from collections.abc import Callable

from fastapi import Depends

from rental_core.services.rate_limiter import RateLimitConfig, enforce_rate_limit

from rental_api.security import CurrentUser, get_current_user


def rate_limited(policy: Callable[[], RateLimitConfig]) -> Callable[..., None]:
    """Build a dependency that counts one request per caller against ``policy``.

    The policy is read per request so environment overrides apply without
    a redeploy. Denied requests raise RateLimitedError (429).
    """

    def dependency(user: CurrentUser = Depends(get_current_user)) -> None:
        enforce_rate_limit(user.user_id, policy())

    return dependency
