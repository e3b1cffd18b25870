"""Unit tests for Route53DNSProvider."""

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from cloudflare_route53_controller.cli import (
    ProviderError,
    ProviderRecordDescriptor,
    Route53DNSProvider,
)


def client_error(code: str = "InvalidChangeBatch") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": "rejected"}}, "ChangeResourceRecordSets")


class TestRoute53Record:
    """Tests for the Route53 desired record."""

    def test_desired_record_points_at_cloudflare_cdn(self) -> None:
        provider = Route53DNSProvider("Z123", client=MagicMock())

        record = provider.desired_record("api.example.com", "origin.example.com")

        assert record == ProviderRecordDescriptor(
            name="api.example.com",
            value="api.example.com.cdn.cloudflare.net",
            ttl=60,
            proxied=False,
            type="CNAME",
        )

    def test_resolve_zone_id_returns_configured_zone(self) -> None:
        provider = Route53DNSProvider("Z123", client=MagicMock())

        assert provider.resolve_zone_id() == "Z123"

    def test_resolve_zone_id_without_zone_raises(self) -> None:
        provider = Route53DNSProvider("", client=MagicMock())

        with pytest.raises(ProviderError):
            provider.resolve_zone_id()


class TestRoute53Upsert:
    """Tests for Route53 upserts."""

    def test_upsert_submits_upsert_change(self) -> None:
        client = MagicMock()
        provider = Route53DNSProvider("Z123", client=client)

        provider.upsert_record("Z123", provider.desired_record("api.example.com", "origin"))

        client.change_resource_record_sets.assert_called_once_with(
            HostedZoneId="Z123",
            ChangeBatch={
                "Changes": [
                    {
                        "Action": "UPSERT",
                        "ResourceRecordSet": {
                            "Name": "api.example.com",
                            "Type": "CNAME",
                            "TTL": 60,
                            "ResourceRecords": [{"Value": "api.example.com.cdn.cloudflare.net"}],
                        },
                    }
                ]
            },
        )

    def test_repeated_upsert_submits_identical_change(self) -> None:
        """Same desired state, same request: UPSERT replaces rather than duplicates."""
        client = MagicMock()
        provider = Route53DNSProvider("Z123", client=client)
        record = provider.desired_record("api.example.com", "origin")

        provider.upsert_record("Z123", record)
        provider.upsert_record("Z123", record)

        first, second = client.change_resource_record_sets.call_args_list
        assert first == second
        assert first.kwargs["ChangeBatch"]["Changes"][0]["Action"] == "UPSERT"

    def test_client_error_raises_provider_error(self) -> None:
        client = MagicMock()
        client.change_resource_record_sets.side_effect = client_error()
        provider = Route53DNSProvider("Z123", client=client)

        with pytest.raises(ProviderError, match="api.example.com"):
            provider.upsert_record("Z123", provider.desired_record("api.example.com", "origin"))

    def test_connection_error_raises_provider_error(self) -> None:
        client = MagicMock()
        client.change_resource_record_sets.side_effect = EndpointConnectionError(
            endpoint_url="https://route53.amazonaws.com"
        )
        provider = Route53DNSProvider("Z123", client=client)

        with pytest.raises(ProviderError):
            provider.upsert_record("Z123", provider.desired_record("api.example.com", "origin"))


class TestRoute53Connection:
    """Tests for Route53 connection checks."""

    def test_test_connection_success(self) -> None:
        client = MagicMock()
        provider = Route53DNSProvider("Z123", client=client)

        assert provider.test_connection() is True
        client.get_hosted_zone.assert_called_once_with(Id="Z123")

    def test_test_connection_failure(self) -> None:
        client = MagicMock()
        client.get_hosted_zone.side_effect = client_error("NoSuchHostedZone")
        provider = Route53DNSProvider("Z123", client=client)

        assert provider.test_connection() is False
