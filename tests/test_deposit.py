"""Collateral deposits: escrow verification, crediting, double-processing."""

from decimal import Decimal

import pytest

from conftest import CUSTODY, MARKET_ID, OTHER_USER, USER, make_market
from lendcore.ledger.base import TX_PAYMENT
from lendcore.ledger.conditions import generate_condition
from lendcore.models import EscrowStatus
from lendcore.storage import escrows as escrow_store


async def _deposit_with(service, ledger, user=USER, amount="100", escrow=None, overrides=None):
    escrow = dict(escrow or {})
    owner = OTHER_USER if escrow.pop("other_owner", False) else user
    cond = generate_condition()
    tx = ledger.add_escrow_create(owner, amount, cond["condition"], **escrow)
    args = {"condition": cond["condition"], "fulfillment": cond["fulfillment"], "preimage": cond["preimage"]}
    args.update(overrides or {})
    return await service.deposit_collateral(tx, user, MARKET_ID, args["condition"], args["fulfillment"], args["preimage"])


@pytest.mark.asyncio
async def test_deposit_opens_position_and_records_escrow(service, deposit, temp_db):
    result = await deposit("100")
    assert result.success, result.error
    data = result.data
    assert data["marketId"] == MARKET_ID
    assert Decimal(data["creditedAmount"]) == Decimal("100")
    assert Decimal(data["collateralAmount"]) == Decimal("100")

    escrows = escrow_store.list_active_escrows(temp_db, data["positionId"])
    assert len(escrows) == 1
    assert escrows[0].status == EscrowStatus.ACTIVE
    assert escrows[0].destination == CUSTODY
    assert escrows[0].sequence == data["escrowSequence"]


@pytest.mark.asyncio
async def test_second_deposit_tops_up_same_position(service, deposit):
    first = await deposit("100")
    second = await deposit("25.5")
    assert second.data["positionId"] == first.data["positionId"]
    assert Decimal(second.data["collateralAmount"]) == Decimal("125.5")


@pytest.mark.asyncio
async def test_same_transaction_cannot_be_credited_twice(service, ledger):
    cond = generate_condition()
    tx = ledger.add_escrow_create(USER, "100", cond["condition"])
    args = (tx, USER, MARKET_ID, cond["condition"], cond["fulfillment"], cond["preimage"])
    assert (await service.deposit_collateral(*args)).success
    again = await service.deposit_collateral(*args)
    assert again.error_code == "TX_ALREADY_PROCESSED"
    view = service.get_position(USER, MARKET_ID)
    assert Decimal(view.data["position"]["collateral_amount"]) == Decimal("100")


@pytest.mark.asyncio
async def test_lowercase_hash_is_the_same_transaction(service, ledger):
    cond = generate_condition()
    tx = ledger.add_escrow_create(USER, "100", cond["condition"])
    assert (await service.deposit_collateral(tx, USER, MARKET_ID, cond["condition"], cond["fulfillment"], cond["preimage"])).success
    again = await service.deposit_collateral(
        tx.lower(), USER, MARKET_ID, cond["condition"], cond["fulfillment"], cond["preimage"]
    )
    assert again.error_code == "TX_ALREADY_PROCESSED"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "escrow,code",
    [
        ({"destination": OTHER_USER}, "INVALID_DESTINATION"),
        ({"currency": "USD", "issuer": CUSTODY}, "INVALID_CURRENCY"),
        ({"validated": False}, "TX_FAILED"),
        ({"result": "tecNO_PERMISSION"}, "TX_FAILED"),
        ({"tx_type": TX_PAYMENT}, "NOT_VAULT_DEPOSIT"),
        ({"on_ledger": False}, "ESCROW_NOT_FOUND"),
        ({"other_owner": True}, "INVALID_SENDER"),
    ],
)
async def test_escrow_validation_failures(service, ledger, escrow, code):
    result = await _deposit_with(service, ledger, escrow=escrow)
    assert not result.success
    assert result.error_code == code
    assert service.get_position(USER, MARKET_ID).error_code == "NO_POSITION"


@pytest.mark.asyncio
async def test_condition_must_derive_from_preimage(service, ledger):
    other = generate_condition()
    result = await _deposit_with(service, ledger, overrides={"preimage": other["preimage"]})
    assert result.error_code == "INVALID_ESCROW_PARAMS"


@pytest.mark.asyncio
async def test_missing_escrow_params(service, ledger):
    result = await _deposit_with(service, ledger, overrides={"fulfillment": None})
    assert result.error_code == "MISSING_ESCROW_PARAMS"


@pytest.mark.asyncio
async def test_unknown_transaction(service):
    cond = generate_condition()
    result = await service.deposit_collateral(
        "AB" * 32, USER, MARKET_ID, cond["condition"], cond["fulfillment"], cond["preimage"]
    )
    assert result.error_code == "TX_FAILED"


@pytest.mark.asyncio
async def test_below_minimum_collateral(service, deposit):
    service.registry.sync([make_market(min_collateral_amount=Decimal("10"))])
    result = await deposit("5")
    assert result.error_code == "BELOW_MINIMUM"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "tx_hash,user,market_id,code",
    [
        (None, USER, MARKET_ID, "MISSING_TX_HASH"),
        ("AB" * 32, None, MARKET_ID, "MISSING_USER_ADDRESS"),
        ("AB" * 32, "not-an-address", MARKET_ID, "INVALID_ADDRESS"),
        ("AB" * 32, USER, None, "MISSING_MARKET_ID"),
        ("AB" * 32, USER, "NOPE", "MARKET_NOT_FOUND"),
    ],
)
async def test_request_validation(service, tx_hash, user, market_id, code):
    result = await service.deposit_collateral(tx_hash, user, market_id, "c", "f", "p")
    assert result.error_code == code
