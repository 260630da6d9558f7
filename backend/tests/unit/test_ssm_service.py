"""Unit tests for SSMService against moto's Parameter Store."""

from unittest.mock import patch

import boto3
import pytest
from moto import mock_aws

from rental_core.services.ssm_service import SSMService, SSMServiceError

PARAMETER = "/rentals/test/stripe/secret_key"


@pytest.fixture
def ssm():
    with mock_aws():
        client = boto3.client("ssm", region_name="eu-west-1")
        client.put_parameter(Name=PARAMETER, Value="sk_test_from_ssm", Type="SecureString")
        yield SSMService()


class TestGetParameter:
    def test_reads_secure_string(self, ssm):
        assert ssm.get_parameter(PARAMETER) == "sk_test_from_ssm"

    def test_value_is_cached(self, ssm):
        ssm.get_parameter(PARAMETER)

        with patch.object(ssm._client, "get_parameter") as get_parameter:
            assert ssm.get_parameter(PARAMETER) == "sk_test_from_ssm"
            get_parameter.assert_not_called()

    def test_cache_can_be_bypassed(self, ssm):
        ssm.get_parameter(PARAMETER)
        boto3.client("ssm", region_name="eu-west-1").put_parameter(
            Name=PARAMETER, Value="sk_test_rotated", Type="SecureString", Overwrite=True
        )

        assert ssm.get_parameter(PARAMETER, use_cache=False) == "sk_test_rotated"

    def test_missing_parameter(self, ssm):
        with pytest.raises(SSMServiceError) as exc_info:
            ssm.get_parameter("/rentals/test/stripe/webhook_secret")

        assert exc_info.value.not_found is True
