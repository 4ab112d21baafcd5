"""
Tests del servicio de transacciones: alta de solicitudes, transiciones y consultas.
"""

import uuid
from decimal import Decimal

import pytest

from core.exceptions import (
    AlreadyTerminal,
    ConversionMismatch,
    Forbidden,
    InsufficientBalance,
    NotFound,
    PriceUnavailable,
    ValidationFailed,
)
from services.ledger import BalanceLedger
from services.transaction_service import TransactionInput, TransactionService


def make_input(**overrides) -> TransactionInput:
    data = {
        "user_id": "user-1",
        "kind": "deposit",
        "asset": "BTC",
        "crypto_amount": Decimal("0.02"),
        "usd_value": Decimal("1000"),
        "payment_proof_ref": "proofs/receipt.png",
    }
    data.update(overrides)
    return TransactionInput(**data)


class TestCreate:
    async def test_creates_pending_and_notifies(self, session, notifier):
        service = TransactionService(session, notifier=notifier)
        tx = await service.create(make_input())

        assert tx.status == "pending"
        assert tx.source == "user"
        assert tx.crypto_amount == Decimal("0.02")
        notifier.notify_transaction.assert_awaited_once()
        assert notifier.notify_transaction.await_args.args[1] == "Deposit Request Submitted"

    @pytest.mark.parametrize(
        "overrides",
        [
            {"user_id": ""},
            {"kind": "transfer"},
            {"asset": "LUNA"},
            {"crypto_amount": Decimal("0")},
            {"crypto_amount": Decimal("0.000000001")},  # redondea a 0
            {"usd_value": Decimal("-1")},
            {"payment_proof_ref": "  "},
        ],
    )
    async def test_invalid_input(self, session, overrides):
        with pytest.raises(ValidationFailed):
            await TransactionService(session).create(make_input(**overrides))

    async def test_withdrawal_requires_wallet(self, session):
        with pytest.raises(ValidationFailed):
            await TransactionService(session).create(
                make_input(kind="withdrawal", payment_proof_ref=None, wallet_address=None)
            )

    async def test_withdrawal_balance_precheck(self, session):
        await BalanceLedger(session).upsert("user-1", "BTC", Decimal("0.01"), Decimal("50000"))
        await session.commit()

        with pytest.raises(InsufficientBalance):
            await TransactionService(session).create(
                make_input(kind="withdrawal", wallet_address="bc1qdestination0000000")
            )

    async def test_withdrawal_stores_wallet_as_reference(self, session):
        await BalanceLedger(session).upsert("user-1", "BTC", Decimal("1"), Decimal("50000"))
        await session.commit()

        tx = await TransactionService(session).create(
            make_input(kind="withdrawal", wallet_address="bc1qdestination0000000")
        )
        assert tx.payment_proof_ref == "bc1qdestination0000000"


class TestSubmitDeposit:
    async def test_server_computes_crypto_amount(self, session, user, oracle):
        service = TransactionService(session, oracle=oracle)
        tx = await service.submit_deposit(user, Decimal("1000"), "btc", "proofs/a.png")

        assert tx.asset == "BTC"
        assert tx.crypto_amount == Decimal("0.02")
        assert tx.usd_value == Decimal("1000")
        assert tx.user_email == "user@example.com"

    async def test_matching_client_amount_accepted(self, session, user, oracle):
        tx = await TransactionService(session, oracle=oracle).submit_deposit(
            user, Decimal("1000"), "BTC", "proofs/a.png", crypto_amount=Decimal("0.02")
        )
        assert tx.crypto_amount == Decimal("0.02")

    async def test_stale_client_amount_rejected(self, session, user, oracle):
        with pytest.raises(ConversionMismatch):
            await TransactionService(session, oracle=oracle).submit_deposit(
                user, Decimal("1000"), "BTC", "proofs/a.png", crypto_amount=Decimal("0.0204")
            )

    async def test_below_crypto_minimum(self, session, user, oracle):
        with pytest.raises(ValidationFailed):
            await TransactionService(session, oracle=oracle).submit_deposit(
                user, Decimal("200"), "BTC", "proofs/a.png"
            )

    async def test_usd_deposit_uses_usd_minimum(self, session, user, oracle):
        service = TransactionService(session, oracle=oracle)
        with pytest.raises(ValidationFailed):
            await service.submit_deposit(user, Decimal("300"), "USD", "proofs/a.png")

        tx = await service.submit_deposit(user, Decimal("600"), "USD", "proofs/a.png", payment_method="wire")
        assert tx.crypto_amount == Decimal("600")
        assert tx.payment_method == "wire"

    async def test_fallback_price_refused(self, session, user, fallback_oracle):
        with pytest.raises(PriceUnavailable):
            await TransactionService(session, oracle=fallback_oracle).submit_deposit(
                user, Decimal("1000"), "BTC", "proofs/a.png"
            )


class TestSubmitWithdrawal:
    async def test_values_at_current_price(self, session, user, oracle):
        await BalanceLedger(session).upsert("user-1", "ETH", Decimal("2"), Decimal("2000"))
        await session.commit()

        tx = await TransactionService(session, oracle=oracle).submit_withdrawal(
            user, Decimal("0.5"), "ETH", "0xabc0000000000000000000000000000000000001"
        )
        assert tx.kind == "withdrawal"
        assert tx.usd_value == Decimal("1250")
        assert tx.status == "pending"


class TestTransition:
    async def test_approve_via_service(self, session, admin, notifier):
        service = TransactionService(session, notifier=notifier)
        tx = await service.create(make_input())

        result = await service.transition(tx.id, "approved", admin)

        assert result.status == "approved"
        entry = await BalanceLedger(session).get("user-1", "BTC")
        assert entry.amount == Decimal("0.02")
        # enviada + aprobada
        assert notifier.notify_transaction.await_count == 2

    async def test_reject_via_service(self, session, admin):
        service = TransactionService(session)
        tx = await service.create(make_input())

        result = await service.transition(tx.id, "rejected", admin, "invalid proof")

        assert result.status == "rejected"
        assert result.admin_notes == "invalid proof"

    async def test_unknown_target(self, session, admin):
        service = TransactionService(session)
        tx = await service.create(make_input())
        with pytest.raises(ValidationFailed):
            await service.transition(tx.id, "pending", admin)

    async def test_terminal_is_final(self, session, admin):
        service = TransactionService(session)
        tx = await service.create(make_input())
        await service.transition(tx.id, "rejected", admin)
        with pytest.raises(AlreadyTerminal):
            await service.transition(tx.id, "approved", admin)

    async def test_user_cannot_transition(self, session, user):
        service = TransactionService(session)
        tx = await service.create(make_input())
        with pytest.raises(Forbidden):
            await service.transition(tx.id, "approved", user)


class TestQueries:
    async def test_get_scoped_to_owner(self, session):
        service = TransactionService(session)
        tx = await service.create(make_input())

        assert (await service.get(tx.id, user_id="user-1")).id == tx.id
        with pytest.raises(NotFound):
            await service.get(tx.id, user_id="someone-else")
        with pytest.raises(NotFound):
            await service.get(uuid.uuid4())

    async def test_list_filters_and_paginates(self, session, admin):
        service = TransactionService(session)
        for _ in range(3):
            await service.create(make_input())
        other = await service.create(make_input(user_id="user-2", asset="ETH"))
        await service.transition(other.id, "rejected", admin)

        rows, total = await service.list(user_id="user-1", page=1, limit=2)
        assert total == 3
        assert len(rows) == 2

        rows, total = await service.list(status="rejected")
        assert total == 1
        assert rows[0].asset == "ETH"

        rows, total = await service.list(asset="eth")
        assert total == 1

    async def test_list_rejects_unknown_status(self, session):
        with pytest.raises(ValidationFailed):
            await TransactionService(session).list(status="archived")

    async def test_stats(self, session, admin):
        service = TransactionService(session)
        approved = await service.create(make_input(usd_value=Decimal("1000")))
        await service.create(make_input(usd_value=Decimal("700")))
        await service.transition(approved.id, "approved", admin)

        stats = await service.stats()
        assert stats["pending_deposits"] == 1
        assert stats["pending_withdrawals"] == 0
        assert stats["total_deposits_usd"] == Decimal("1000.00")
        assert stats["total_withdrawals_usd"] == Decimal("0.00")
        assert stats["total_users"] == 1
