import json
from decimal import Decimal

import httpx
import pytest

from fieldwork.domain.errors import NoPayoutMethodError, TransferError
from fieldwork.services.channels import ChannelError, EmailChannel, PushChannel
from fieldwork.services.payouts import AccountPayoutDestination


def provider(status_code=200, body=None, seen=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        return httpx.Response(status_code, json=body or {})
    return httpx.AsyncClient(base_url="https://provider.test", transport=httpx.MockTransport(handler))


async def test_email_channel_posts_template():
    seen = []
    channel = EmailChannel("https://provider.test", api_key="secret", client=provider(seen=seen))

    await channel.send("alice@example.com", {"job_id": "job-1"})

    request = seen[0]
    assert request.url.path == "/emails"
    assert request.headers["Authorization"] == "Bearer secret"
    assert json.loads(request.content) == {
        "to": "alice@example.com",
        "template": "job_assignment",
        "data": {"job_id": "job-1"},
    }
    await channel.close()


async def test_push_channel_merges_message():
    seen = []
    channel = PushChannel("https://provider.test", client=provider(seen=seen))

    await channel.send("alice", {"title": "New Job Available", "body": "$99"})

    assert json.loads(seen[0].content) == {"user_id": "alice", "title": "New Job Available", "body": "$99"}
    assert "Authorization" not in seen[0].headers


async def test_provider_rejection_becomes_channel_error():
    channel = PushChannel("https://provider.test", client=provider(status_code=503))

    with pytest.raises(ChannelError, match="503"):
        await channel.send("alice", {"title": "x"})


async def test_destination_without_provider_records_instruction(session_factory, make_agent):
    await make_agent("alice", payout_account_id="acct_1")
    await make_agent("bob", payout_account_id=None)
    destination = AccountPayoutDestination(session_factory)

    assert await destination.has_payout_method("alice")
    assert not await destination.has_payout_method("bob")
    assert not await destination.has_payout_method("nobody")
    assert await destination.transfer("alice", Decimal("150"), "Scheduled payout - 2 jobs") is None


async def test_destination_transfers_to_connected_account(session_factory, make_agent):
    await make_agent("alice", payout_account_id="acct_1")
    seen = []
    destination = AccountPayoutDestination(
        session_factory, api_key="secret", client=provider(body={"id": "tr_9"}, seen=seen),
    )

    reference = await destination.transfer("alice", Decimal("150.00"), "Scheduled payout - 2 jobs")

    assert reference == "tr_9"
    assert seen[0].url.path == "/transfers"
    assert json.loads(seen[0].content) == {
        "destination": "acct_1",
        "amount": "150.00",
        "description": "Scheduled payout - 2 jobs",
    }
    await destination.close()


async def test_destination_errors(session_factory, make_agent):
    await make_agent("bob", payout_account_id=None)
    await make_agent("carol", payout_account_id="acct_2")
    destination = AccountPayoutDestination(session_factory, client=provider(status_code=402))

    with pytest.raises(NoPayoutMethodError):
        await destination.transfer("bob", Decimal("50"), "Scheduled payout - 1 jobs")
    with pytest.raises(TransferError):
        await destination.transfer("carol", Decimal("50"), "Scheduled payout - 1 jobs")
