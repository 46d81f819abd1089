"""Supply pool: vault deposits, yield index, collection, withdrawals."""

from decimal import Decimal

import pytest

from conftest import LENDER, MARKET_ID, OTHER_USER, USER, make_market
from lendcore.ledger.base import TX_VAULT_DEPOSIT, TX_VAULT_WITHDRAW

D = Decimal


def _supply_view(service, user=LENDER):
    result = service.get_supply_position(user, MARKET_ID)
    assert result.success, result.error
    return result.data


@pytest.mark.asyncio
async def test_supply_opens_position_and_grows_pool(service, fund_pool):
    result = await fund_pool("250")
    assert D(result.data["suppliedAmount"]) == D("250")
    assert D(result.data["supplyAmount"]) == D("250")
    view = _supply_view(service)
    assert view["position"]["status"] == "ACTIVE"
    assert D(view["accruedYield"]) == 0
    assert D(view["pool"]["total_supplied"]) == D("250")


@pytest.mark.asyncio
async def test_realized_interest_never_over_credits_lenders(service, fund_pool):
    await fund_pool("300", LENDER)
    await fund_pool("700", OTHER_USER)
    interest = D("1.23456789")
    service.pool.realize_interest(MARKET_ID, interest)

    total = D(_supply_view(service, LENDER)["accruedYield"]) + D(_supply_view(service, OTHER_USER)["accruedYield"])
    lender_share = interest * (1 - D("0.1"))
    assert total <= lender_share
    assert lender_share - total < D("0.000001")
    pool = service.get_pool_metrics(MARKET_ID).data
    assert D(pool["total_reserves"]) >= interest * D("0.1")


@pytest.mark.asyncio
async def test_top_up_keeps_accrued_yield(service, fund_pool):
    await fund_pool("100")
    service.pool.realize_interest(MARKET_ID, D("10"))
    assert D(_supply_view(service)["accruedYield"]) == D("9")

    result = await fund_pool("100")
    assert D(result.data["supplyAmount"]) == D("200")
    assert D(_supply_view(service)["accruedYield"]) == D("9")


@pytest.mark.asyncio
async def test_collect_yield_retry_after_timeout_keeps_later_yield(service, ledger, fund_pool):
    await fund_pool("100")
    service.pool.realize_interest(MARKET_ID, D("10"))
    ledger.timing_out.add("send_payment")
    first = await service.collect_yield(LENDER, MARKET_ID, idempotency_key="y-1")
    assert first.error_code == "TX_FAILED"

    service.pool.realize_interest(MARKET_ID, D("10"))
    ledger.timing_out.clear()
    retried = await service.collect_yield(LENDER, MARKET_ID, idempotency_key="y-1")
    assert retried.success, retried.error
    assert D(retried.data["collectedAmount"]) == D("9")
    assert len(ledger.payments) == 1
    assert D(_supply_view(service)["accruedYield"]) == D("9")


@pytest.mark.asyncio
async def test_collect_yield_pays_and_resets(service, ledger, fund_pool):
    await fund_pool("100")
    service.pool.realize_interest(MARKET_ID, D("10"))

    result = await service.collect_yield(LENDER, MARKET_ID)
    assert result.success, result.error
    assert D(result.data["collectedAmount"]) == D("9")
    assert ledger.payments[-1][0] == LENDER
    assert ledger.payments[-1][1].value == D("9")
    assert D(_supply_view(service)["accruedYield"]) == 0

    again = await service.collect_yield(LENDER, MARKET_ID)
    assert D(again.data["collectedAmount"]) == 0
    assert again.data["txHash"] is None
    assert len(ledger.payments) == 1


@pytest.mark.asyncio
async def test_collect_yield_failure_keeps_yield_claimable(service, ledger, fund_pool):
    await fund_pool("100")
    service.pool.realize_interest(MARKET_ID, D("10"))
    ledger.failing.add("send_payment")
    assert (await service.collect_yield(LENDER, MARKET_ID)).error_code == "TX_FAILED"
    assert D(_supply_view(service)["accruedYield"]) == D("9")


@pytest.mark.asyncio
async def test_partial_withdraw_preserves_yield(service, ledger, fund_pool):
    await fund_pool("100")
    service.pool.realize_interest(MARKET_ID, D("10"))
    tx = ledger.add_vault_tx(TX_VAULT_WITHDRAW, LENDER, "40")

    result = await service.withdraw_supply(tx, LENDER, MARKET_ID, "40")
    assert result.success, result.error
    assert D(result.data["remainingSupply"]) == D("60")
    assert result.data["status"] == "ACTIVE"
    assert D(result.data["yieldPaid"]) == 0
    view = _supply_view(service)
    assert D(view["accruedYield"]) == D("9")
    assert D(view["pool"]["total_supplied"]) == D("60")


@pytest.mark.asyncio
async def test_full_withdraw_pays_unclaimed_yield_and_closes(service, ledger, fund_pool):
    await fund_pool("100")
    service.pool.realize_interest(MARKET_ID, D("10"))
    tx = ledger.add_vault_tx(TX_VAULT_WITHDRAW, LENDER, "100")

    result = await service.withdraw_supply(tx, LENDER, MARKET_ID, "100")
    assert result.data["status"] == "CLOSED"
    assert D(result.data["yieldPaid"]) == D("9")
    assert result.data["yieldTxHash"]
    assert ledger.payments[-1][1].value == D("9")
    assert service.get_supply_position(LENDER, MARKET_ID).error_code == "NO_SUPPLY_POSITION"


@pytest.mark.asyncio
async def test_share_denominated_withdrawal_skips_amount_check(service, ledger, fund_pool):
    await fund_pool("100")
    tx = ledger.add_vault_tx(TX_VAULT_WITHDRAW, LENDER, "12345", mpt_issuance_id="0000012FFD9EE5DA93AC614B4DB94D7E0FCE415CA51BED47")
    result = await service.withdraw_supply(tx, LENDER, MARKET_ID, "40")
    assert result.success, result.error


@pytest.mark.asyncio
async def test_withdraw_supply_errors(service, ledger, fund_pool, deposit):
    await fund_pool("100")
    await deposit("100")
    await service.borrow(USER, MARKET_ID, "60")

    too_much = ledger.add_vault_tx(TX_VAULT_WITHDRAW, LENDER, "150")
    assert (await service.withdraw_supply(too_much, LENDER, MARKET_ID, "150")).error_code == "INSUFFICIENT_SUPPLY"

    lent_out = ledger.add_vault_tx(TX_VAULT_WITHDRAW, LENDER, "50")
    assert (await service.withdraw_supply(lent_out, LENDER, MARKET_ID, "50")).error_code == "INSUFFICIENT_POOL_LIQUIDITY"

    mismatch = ledger.add_vault_tx(TX_VAULT_WITHDRAW, LENDER, "30")
    assert (await service.withdraw_supply(mismatch, LENDER, MARKET_ID, "20")).error_code == "AMOUNT_MISMATCH"

    wrong_type = ledger.add_vault_tx(TX_VAULT_DEPOSIT, LENDER, "20")
    assert (await service.withdraw_supply(wrong_type, LENDER, MARKET_ID, "20")).error_code == "NOT_VAULT_WITHDRAW"

    assert (await service.withdraw_supply("AB" * 32, USER, MARKET_ID, "1")).error_code == "NO_SUPPLY_POSITION"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "tx_args,code",
    [
        ({"tx_type": TX_VAULT_DEPOSIT, "account": LENDER, "amount": "100", "vault_id": "FF" * 32}, "WRONG_VAULT"),
        ({"tx_type": TX_VAULT_WITHDRAW, "account": LENDER, "amount": "100"}, "NOT_VAULT_DEPOSIT"),
        ({"tx_type": TX_VAULT_DEPOSIT, "account": OTHER_USER, "amount": "100"}, "INVALID_SENDER"),
        ({"tx_type": TX_VAULT_DEPOSIT, "account": LENDER, "amount": "100", "currency": "USD"}, "INVALID_CURRENCY"),
        ({"tx_type": TX_VAULT_DEPOSIT, "account": LENDER, "amount": "100", "issuer": USER}, "INVALID_ISSUER"),
        ({"tx_type": TX_VAULT_DEPOSIT, "account": LENDER, "amount": "1"}, "BELOW_MINIMUM"),
    ],
)
async def test_supply_validation(service, ledger, tx_args, code):
    tx = ledger.add_vault_tx(**tx_args)
    result = await service.supply(tx, LENDER, MARKET_ID)
    assert result.error_code == code
    assert D(service.get_pool_metrics(MARKET_ID).data["total_supplied"]) == 0


@pytest.mark.asyncio
async def test_supply_transaction_is_processed_once(service, ledger):
    tx = ledger.add_vault_tx(TX_VAULT_DEPOSIT, LENDER, "100")
    assert (await service.supply(tx, LENDER, MARKET_ID)).success
    assert (await service.supply(tx, LENDER, MARKET_ID)).error_code == "TX_ALREADY_PROCESSED"


@pytest.mark.asyncio
async def test_market_without_vault(service, ledger, fund_pool):
    await fund_pool("100")
    service.registry.sync([make_market(vault_id=None)])
    tx = ledger.add_vault_tx(TX_VAULT_DEPOSIT, LENDER, "100")
    assert (await service.supply(tx, LENDER, MARKET_ID)).error_code == "VAULT_NOT_CONFIGURED"
    assert (await service.collect_yield(LENDER, MARKET_ID)).error_code == "UNSUPPORTED_OPERATION"
