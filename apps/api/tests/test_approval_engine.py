"""
Tests del motor de aprobación.
Los algoritmos puros se prueban sin BD; las transiciones contra SQLite en memoria.
Todas las aserciones usan Decimal para evitar errores de precisión.
"""

import uuid
from decimal import Decimal
from unittest.mock import AsyncMock

import httpx
import pytest
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from core.exceptions import (
    AlreadyTerminal,
    ApprovalFailed,
    Forbidden,
    InsufficientBalance,
    NotFound,
    PriceUnavailable,
    ValidationFailed,
)
from models.adjustment import AdminBalanceAdjustment
from models.notification import Notification
from models.transaction import Transaction
from services.approval_engine import (
    ApprovalEngine,
    BalanceState,
    apply_debit,
    blend_credit,
    deposit_blend,
    ensure_transition,
)
from services.ledger import BalanceLedger
from services.notifications import NotificationEmitter

# ---------------------------------------------------------------------------
# Helpers de fixtures
# ---------------------------------------------------------------------------


async def add_pending(
    session,
    kind: str = "deposit",
    asset: str = "BTC",
    crypto_amount: str = "0.02",
    usd_value: str = "1000",
    user_id: str = "user-1",
) -> Transaction:
    tx = Transaction(
        id=uuid.uuid4(),
        user_id=user_id,
        user_email="user@example.com",
        kind=kind,
        asset=asset,
        crypto_amount=Decimal(crypto_amount),
        usd_value=Decimal(usd_value),
        status="pending",
        payment_proof_ref="proofs/abc.png" if kind == "deposit" else "bc1qexampleaddress0000",
    )
    session.add(tx)
    await session.commit()
    return tx


async def reload(session, tx_id: uuid.UUID) -> Transaction:
    q = select(Transaction).where(Transaction.id == tx_id).execution_options(populate_existing=True)
    return (await session.execute(q)).scalar_one()


# ===========================================================================
# Tests: algoritmos puros
# ===========================================================================


class TestBlendCredit:
    def test_weighted_average(self):
        """2 @ 100 + 3 unidades por 450 USD → 5 @ 130."""
        result = deposit_blend(BalanceState(Decimal("2"), Decimal("100")), Decimal("3"), Decimal("450"))
        assert result.amount == Decimal("5")
        assert result.average_buy_price == Decimal("130")

    def test_first_credit_takes_deposit_price(self):
        result = deposit_blend(None, Decimal("0.02"), Decimal("1000"))
        assert result.amount == Decimal("0.02")
        assert result.average_buy_price == Decimal("50000")

    def test_credit_from_zero_balance_ignores_old_average(self):
        result = blend_credit(BalanceState(Decimal("0"), Decimal("999")), Decimal("1"), Decimal("10"))
        assert result.average_buy_price == Decimal("10")

    def test_zero_quantity_rejected(self):
        with pytest.raises(ValidationFailed):
            deposit_blend(None, Decimal("0"), Decimal("1000"))


class TestApplyDebit:
    def test_average_unchanged(self):
        result = apply_debit(BalanceState(Decimal("1.5"), Decimal("2000")), "ETH", Decimal("0.5"))
        assert result.amount == Decimal("1.0")
        assert result.average_buy_price == Decimal("2000")

    def test_exact_balance_leaves_zero(self):
        result = apply_debit(BalanceState(Decimal("1"), Decimal("2000")), "ETH", Decimal("1"))
        assert result.amount == Decimal("0")

    def test_insufficient_balance(self):
        with pytest.raises(InsufficientBalance) as exc_info:
            apply_debit(BalanceState(Decimal("1.0"), Decimal("2000")), "ETH", Decimal("1.5"))
        assert exc_info.value.details == {"asset": "ETH", "required": "1.5", "available": "1.0"}

    def test_missing_entry_is_insufficient(self):
        with pytest.raises(InsufficientBalance):
            apply_debit(None, "ETH", Decimal("0.1"))


class TestEnsureTransition:
    def test_pending_to_approved(self):
        ensure_transition(uuid.uuid4(), "pending", "approved")

    @pytest.mark.parametrize("current", ["approved", "rejected"])
    def test_terminal_states_refuse_everything(self, current):
        with pytest.raises(AlreadyTerminal):
            ensure_transition(uuid.uuid4(), current, "approved")

    def test_pending_is_not_a_valid_target(self):
        with pytest.raises(ValidationFailed):
            ensure_transition(uuid.uuid4(), "pending", "pending")


# ===========================================================================
# Tests: transiciones con BD
# ===========================================================================


class TestApprove:
    async def test_deposit_approval_scenario(self, session, admin, notifier):
        """1000 USD @ 50000 → 0.02 BTC; entrada 0.02 @ 50000 y una notificación."""
        tx = await add_pending(session, crypto_amount="0.02000000", usd_value="1000")
        engine = ApprovalEngine(session, notifier=notifier)

        result = await engine.approve(tx.id, admin)

        assert result.status == "approved"
        assert result.approved_by == "admin-1"
        assert result.approved_at is not None
        entry = await BalanceLedger(session).get("user-1", "BTC")
        assert entry.amount == Decimal("0.02")
        assert entry.average_buy_price == Decimal("50000")
        notifier.notify_transaction.assert_awaited_once()
        title = notifier.notify_transaction.await_args.args[1]
        assert title == "Deposit Approved"

    async def test_second_deposit_blends_average(self, session, admin):
        engine = ApprovalEngine(session)
        await BalanceLedger(session).upsert("user-1", "SOL", Decimal("2"), Decimal("100"))
        await session.commit()
        tx = await add_pending(session, asset="SOL", crypto_amount="3", usd_value="450")

        await engine.approve(tx.id, admin)

        entry = await BalanceLedger(session).get("user-1", "SOL")
        assert entry.amount == Decimal("5")
        assert entry.average_buy_price == Decimal("130")

    async def test_withdrawal_keeps_average(self, session, admin):
        await BalanceLedger(session).upsert("user-1", "ETH", Decimal("1.5"), Decimal("2000"))
        await session.commit()
        tx = await add_pending(session, kind="withdrawal", asset="ETH", crypto_amount="0.5", usd_value="1250")

        await ApprovalEngine(session).approve(tx.id, admin)

        entry = await BalanceLedger(session).get("user-1", "ETH")
        assert entry.amount == Decimal("1.0")
        assert entry.average_buy_price == Decimal("2000")

    async def test_insufficient_withdrawal_changes_nothing(self, session, admin, notifier):
        """1.0 ETH en balance, se piden 1.5: InsufficientBalance y todo intacto."""
        await BalanceLedger(session).upsert("user-1", "ETH", Decimal("1.0"), Decimal("2000"))
        await session.commit()
        tx = await add_pending(session, kind="withdrawal", asset="ETH", crypto_amount="1.5", usd_value="3750")

        with pytest.raises(InsufficientBalance):
            await ApprovalEngine(session, notifier=notifier).approve(tx.id, admin)

        assert (await reload(session, tx.id)).status == "pending"
        entry = await BalanceLedger(session).get("user-1", "ETH")
        assert entry.amount == Decimal("1.0")
        notifier.notify_transaction.assert_not_awaited()

    async def test_approving_twice_raises_already_terminal(self, session, admin):
        tx = await add_pending(session)
        engine = ApprovalEngine(session)
        await engine.approve(tx.id, admin)

        with pytest.raises(AlreadyTerminal):
            await engine.approve(tx.id, admin)

        entry = await BalanceLedger(session).get("user-1", "BTC")
        assert entry.amount == Decimal("0.02")

    async def test_reject_after_approve_raises_already_terminal(self, session, admin):
        tx = await add_pending(session)
        engine = ApprovalEngine(session)
        await engine.approve(tx.id, admin)

        with pytest.raises(AlreadyTerminal):
            await engine.reject(tx.id, admin, "too late")

    async def test_ledger_failure_rolls_back(self, session, admin, notifier, monkeypatch):
        """Si la escritura del ledger falla la transacción sigue en pending."""
        tx = await add_pending(session)
        engine = ApprovalEngine(session, notifier=notifier)

        async def boom(*args, **kwargs):
            raise SQLAlchemyError("boom")

        monkeypatch.setattr(engine.ledger, "upsert", boom)

        with pytest.raises(ApprovalFailed):
            await engine.approve(tx.id, admin)

        assert (await reload(session, tx.id)).status == "pending"
        assert await BalanceLedger(session).get("user-1", "BTC") is None
        notifier.notify_transaction.assert_not_awaited()

    async def test_approval_is_retryable_after_failure(self, session, admin, monkeypatch):
        tx = await add_pending(session)
        engine = ApprovalEngine(session)
        original = engine.ledger.upsert

        async def boom(*args, **kwargs):
            raise SQLAlchemyError("boom")

        monkeypatch.setattr(engine.ledger, "upsert", boom)
        with pytest.raises(ApprovalFailed):
            await engine.approve(tx.id, admin)

        monkeypatch.setattr(engine.ledger, "upsert", original)
        result = await engine.approve(tx.id, admin)
        assert result.status == "approved"

    async def test_unexpected_error_surfaces_as_approval_failed(self, session, admin, monkeypatch):
        tx = await add_pending(session)
        engine = ApprovalEngine(session)

        async def lost_row(*args, **kwargs):
            raise RuntimeError("Upsert sin fila resultante")

        monkeypatch.setattr(engine.ledger, "upsert", lost_row)

        with pytest.raises(ApprovalFailed) as exc_info:
            await engine.approve(tx.id, admin)

        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert (await reload(session, tx.id)).status == "pending"
        assert await BalanceLedger(session).get("user-1", "BTC") is None

    async def test_non_admin_forbidden(self, session, user):
        tx = await add_pending(session)
        with pytest.raises(Forbidden):
            await ApprovalEngine(session).approve(tx.id, user)
        assert (await reload(session, tx.id)).status == "pending"

    async def test_unknown_transaction(self, session, admin):
        with pytest.raises(NotFound):
            await ApprovalEngine(session).approve(uuid.uuid4(), admin)

    async def test_email_failure_does_not_undo_approval(self, session, admin):
        """El email falla después del commit: la aprobación y la notificación in-app quedan."""
        sink = AsyncMock()
        sink.send = AsyncMock(side_effect=httpx.ConnectError("resend down"))
        tx = await add_pending(session)

        await ApprovalEngine(session, notifier=NotificationEmitter(session, email_sink=sink)).approve(tx.id, admin)

        assert (await reload(session, tx.id)).status == "approved"
        sink.send.assert_awaited_once()
        rows = (await session.execute(select(Notification))).scalars().all()
        assert [n.title for n in rows] == ["Deposit Approved"]


class TestReject:
    async def test_rejection_scenario(self, session, admin, notifier):
        """Notas 'invalid proof' guardadas, ledger intacto, la notificación las incluye."""
        tx = await add_pending(session)

        result = await ApprovalEngine(session, notifier=notifier).reject(tx.id, admin, "invalid proof")

        assert result.status == "rejected"
        assert (await reload(session, tx.id)).admin_notes == "invalid proof"
        assert await BalanceLedger(session).get("user-1", "BTC") is None
        notifier.notify_transaction.assert_awaited_once()
        message = notifier.notify_transaction.await_args.args[2]
        assert "invalid proof" in message

    async def test_reject_twice(self, session, admin):
        tx = await add_pending(session)
        engine = ApprovalEngine(session)
        await engine.reject(tx.id, admin)
        with pytest.raises(AlreadyTerminal):
            await engine.reject(tx.id, admin)


class TestAdjustBalance:
    async def test_add_blends_at_market_price(self, session, admin, oracle, notifier):
        await BalanceLedger(session).upsert("user-1", "BTC", Decimal("0.02"), Decimal("40000"))
        await session.commit()
        engine = ApprovalEngine(session, notifier=notifier, oracle=oracle)

        result = await engine.adjust_balance(admin, "user-1", "btc", "add", Decimal("1000"), reason="profit")

        # +0.02 BTC @ 50000 sobre 0.02 @ 40000 → 0.04 @ 45000
        assert result.balance.amount == Decimal("0.04")
        assert result.balance.average_buy_price == Decimal("45000")
        assert result.transaction.status == "approved"
        assert result.transaction.source == "admin_adjustment"
        assert result.adjustment.price_usd == Decimal("50000")
        rows = (await session.execute(select(AdminBalanceAdjustment))).scalars().all()
        assert len(rows) == 1
        assert rows[0].transaction_id == result.transaction.id
        notifier.notify.assert_awaited_once()
        assert notifier.notify.await_args.kwargs["type"] == "adjustment"

    async def test_subtract_respects_floor(self, session, admin, oracle):
        await BalanceLedger(session).upsert("user-1", "ETH", Decimal("0.1"), Decimal("2000"))
        await session.commit()
        engine = ApprovalEngine(session, oracle=oracle)

        # 500 USD @ 2500 = 0.2 ETH > 0.1
        with pytest.raises(InsufficientBalance):
            await engine.adjust_balance(admin, "user-1", "ETH", "subtract", Decimal("500"))

        entry = await BalanceLedger(session).get("user-1", "ETH")
        assert entry.amount == Decimal("0.1")
        assert (await session.execute(select(AdminBalanceAdjustment))).scalars().all() == []

    async def test_subtract_keeps_average(self, session, admin, oracle):
        await BalanceLedger(session).upsert("user-1", "ETH", Decimal("1"), Decimal("2000"))
        await session.commit()

        result = await ApprovalEngine(session, oracle=oracle).adjust_balance(
            admin, "user-1", "ETH", "subtract", Decimal("250")
        )

        assert result.balance.amount == Decimal("0.9")
        assert result.balance.average_buy_price == Decimal("2000")
        assert result.transaction.kind == "withdrawal"

    async def test_fallback_price_refused(self, session, admin, fallback_oracle):
        engine = ApprovalEngine(session, oracle=fallback_oracle)
        with pytest.raises(PriceUnavailable):
            await engine.adjust_balance(admin, "user-1", "BTC", "add", Decimal("100"))

    async def test_non_admin_forbidden(self, session, user, oracle):
        with pytest.raises(Forbidden):
            await ApprovalEngine(session, oracle=oracle).adjust_balance(user, "user-1", "BTC", "add", Decimal("100"))

    async def test_unknown_direction(self, session, admin, oracle):
        with pytest.raises(ValidationFailed):
            await ApprovalEngine(session, oracle=oracle).adjust_balance(admin, "user-1", "BTC", "double", Decimal("1"))


class TestConcurrentApprovals:
    """
    Dos sesiones sobre la misma BD en fichero. La segunda aprobación se
    intercala a mano dentro de la primera, en la lectura del ledger.
    """

    async def test_stale_approver_gets_already_terminal(self, file_database, admin, monkeypatch):
        async with file_database.session() as setup:
            await BalanceLedger(setup).upsert("user-1", "BTC", Decimal("1"), Decimal("40000"))
            await setup.commit()
            tx = await add_pending(setup)

        async with file_database.session() as session_a, file_database.session() as session_b:
            engine_a, engine_b = ApprovalEngine(session_a), ApprovalEngine(session_b)
            read_entry = engine_a.ledger.get
            interleaved = []

            async def other_admin_first(user_id, asset, for_update=False):
                if not interleaved:
                    interleaved.append(await engine_b.approve(tx.id, admin))
                return await read_entry(user_id, asset, for_update=for_update)

            monkeypatch.setattr(engine_a.ledger, "get", other_admin_first)

            with pytest.raises(AlreadyTerminal) as exc_info:
                await engine_a.approve(tx.id, admin)

        assert exc_info.value.details["status"] == "approved"
        async with file_database.session() as check:
            assert (await BalanceLedger(check).get("user-1", "BTC")).amount == Decimal("1.02")
            assert (await reload(check, tx.id)).status == "approved"

    async def test_first_deposits_for_same_pair_keep_both_credits(self, file_database, admin, monkeypatch):
        async with file_database.session() as setup:
            first = await add_pending(setup, crypto_amount="1", usd_value="50000")
            second = await add_pending(setup, crypto_amount="2", usd_value="100000")

        async with file_database.session() as session_a, file_database.session() as session_b:
            engine_a, engine_b = ApprovalEngine(session_a), ApprovalEngine(session_b)
            read_entry = engine_a.ledger.get
            interleaved = []

            async def other_admin_after_read(user_id, asset, for_update=False):
                entry = await read_entry(user_id, asset, for_update=for_update)
                if not interleaved:
                    interleaved.append(await engine_b.approve(second.id, admin))
                return entry

            monkeypatch.setattr(engine_a.ledger, "get", other_admin_after_read)

            # Ambas leyeron "sin entrada": la que llega tarde choca con la restricción única
            with pytest.raises(ApprovalFailed):
                await engine_a.approve(first.id, admin)
            assert (await reload(session_a, first.id)).status == "pending"

            # Reintento: la entrada ya existe y se actualiza sobre el importe de la otra
            retried = await engine_a.approve(first.id, admin)
            assert retried.status == "approved"

        async with file_database.session() as check:
            entry = await BalanceLedger(check).get("user-1", "BTC")
        assert entry.amount == Decimal("3")
        assert entry.average_buy_price == Decimal("50000")
