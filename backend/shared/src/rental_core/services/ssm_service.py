"""Stripe secrets from SSM Parameter Store.

Deployed stacks keep the Stripe secret key and webhook signing secret as
SecureString parameters under ``/rentals/{environment}/stripe/``. Local
runs and tests set STRIPE_SECRET_KEY / STRIPE_WEBHOOK_SECRET instead and
never reach this module.
"""

import logging
from functools import lru_cache

import boto3
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)


class SSMServiceError(Exception):
    """A parameter could not be read. ``not_found`` marks a missing parameter."""

    def __init__(self, message: str, not_found: bool = False) -> None:
        super().__init__(message)
        self.not_found = not_found


class SSMService:
    """Decrypting parameter reader with a per-container cache."""

    def __init__(self) -> None:
        self._client = boto3.client("ssm")
        self._values: dict[str, str] = {}

    def get_parameter(self, name: str, *, use_cache: bool = True) -> str:
        """Decrypted value of parameter ``name``.

        Raises:
            SSMServiceError: The parameter is missing, access is denied, or
                the call failed.
        """
        if use_cache and name in self._values:
            return self._values[name]

        logger.info("Fetching SSM parameter: %s", name)
        try:
            response = self._client.get_parameter(Name=name, WithDecryption=True)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "Unknown")
            if code == "ParameterNotFound":
                raise SSMServiceError(f"SSM parameter not found: {name}", not_found=True) from e
            if code == "AccessDeniedException":
                raise SSMServiceError(
                    f"Access denied to SSM parameter {name}; the function role needs ssm:GetParameter"
                ) from e
            raise SSMServiceError(f"Failed to read SSM parameter {name}: {e}") from e

        value: str = response["Parameter"]["Value"]
        self._values[name] = value
        return value


@lru_cache(maxsize=1)
def get_ssm_service() -> SSMService:
    return SSMService()
