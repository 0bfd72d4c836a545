import pytest

from settlement.errors import (
    GatewayUnavailableError,
    InsufficientBalanceError,
    InvalidPayoutStateError,
    NeedsAccountSetupError,
    PartyFrozenError,
    PayoutBelowMinimumError,
    PayoutNotFoundError,
    TransferRejectedError,
)
from settlement.models import (
    EntryReason,
    LedgerEntry,
    PartyType,
    PayoutRequest,
    PayoutStatus,
    Reservation,
    ReservationStatus,
    db,
)
from settlement.money import Money

BRAND = PartyType.BRAND


@pytest.fixture()
def funded_brand(services, seed):
    """Marca con $37.50 disponibles (orden de $100 con afiliado y referrer) y cuenta Stripe activa."""
    seed.brand(owner="owner-1")
    seed.affiliate(rate="0.20")
    seed.referral(referrer="referrer-1", referred="owner-1")
    seed.order(ref="aff-1")
    seed.account("brand", "brand-1", "acct_brand_1")
    assert services.ledger.balance(BRAND, "brand-1") == Money(3750)
    return "brand-1"


def test_second_request_against_reserved_balance_fails(services, funded_brand):
    p = services.payouts.request_payout("brand", funded_brand, Money.from_decimal("37.50"))
    assert p.status == PayoutStatus.REQUESTED
    assert services.ledger.available(BRAND, funded_brand) == Money(0)

    with pytest.raises(InsufficientBalanceError):
        services.payouts.request_payout("brand", funded_brand, Money.from_decimal("0.01"))

    assert db.session.query(PayoutRequest).count() == 1
    assert services.ledger.balance(BRAND, funded_brand) == Money(3750)


def test_successful_transfer_debits_and_consumes(services, funded_brand, gateway):
    p = services.payouts.request_and_submit("brand", funded_brand, Money(3750))

    assert p.status == PayoutStatus.TRANSFERRING
    assert p.transfer_ref == "tr_test_1"
    assert p.attempts == 1
    assert gateway.calls[0]["destination"] == "acct_brand_1"
    assert gateway.calls[0]["idempotency_key"] == f"payout-{p.public_id}"

    debit = db.session.get(LedgerEntry, p.debit_entry_id)
    assert debit.reason == EntryReason.PAYOUT_DEBIT
    assert debit.delta_minor == -3750

    r = db.session.query(Reservation).filter_by(payout_id=p.id).one()
    assert r.status == ReservationStatus.CONSUMED

    view = services.ledger.view(BRAND, funded_brand)
    assert view.balance == Money(0)
    assert view.available == Money(0)


def test_submit_is_a_noop_once_transferring(services, funded_brand, gateway):
    p = services.payouts.request_and_submit("brand", funded_brand, Money(2000))
    again = services.payouts.submit(p.public_id)

    assert again.status == PayoutStatus.TRANSFERRING
    assert len(gateway.calls) == 1
    assert db.session.query(LedgerEntry).filter_by(payout_id=p.id).count() == 1


def test_failed_transfer_is_reversed_not_edited(services, funded_brand):
    p = services.payouts.request_and_submit("brand", funded_brand, Money(3750))
    debit_id = p.debit_entry_id

    res = services.payouts.mark_failed(p, "account_closed")

    assert res.applied is True
    assert res.payout.status == PayoutStatus.FAILED
    assert res.payout.failure_reason == "account_closed"

    reversal = db.session.get(LedgerEntry, res.payout.reversal_entry_id)
    assert reversal.reason == EntryReason.PAYOUT_REVERSAL
    assert reversal.delta_minor == 3750
    assert reversal.related_entry_id == debit_id
    assert db.session.get(LedgerEntry, debit_id).delta_minor == -3750

    assert services.ledger.balance(BRAND, funded_brand) == Money(3750)

    # segundo fallo: no hay segunda reversa
    assert services.payouts.mark_failed(res.payout, "again").applied is False
    assert services.ledger.balance(BRAND, funded_brand) == Money(3750)


def test_completion_keeps_the_debit(services, funded_brand):
    p = services.payouts.request_and_submit("brand", funded_brand, Money(1000))
    res = services.payouts.mark_completed(p)

    assert res.applied is True
    assert res.payout.status == PayoutStatus.COMPLETED
    assert services.ledger.balance(BRAND, funded_brand) == Money(2750)
    assert services.payouts.mark_completed(res.payout).applied is False


def test_gateway_down_retries_with_backoff_then_fails(services, funded_brand, gateway, sleeps):
    gateway.script = [GatewayUnavailableError("down")] * 3

    p = services.payouts.request_and_submit("brand", funded_brand, Money(3750))

    assert p.status == PayoutStatus.FAILED
    assert p.attempts == 3
    assert p.transfer_ref is None
    assert "gateway_unavailable" in p.failure_reason
    assert len(gateway.calls) == 3
    assert len(sleeps) == 2
    assert {c["idempotency_key"] for c in gateway.calls} == {f"payout-{p.public_id}"}

    # nada salió: sin asientos y la reserva vuelve al disponible
    assert db.session.query(LedgerEntry).filter_by(payout_id=p.id).count() == 0
    assert db.session.query(Reservation).filter_by(payout_id=p.id).one().status == ReservationStatus.RELEASED
    assert services.ledger.available(BRAND, funded_brand) == Money(3750)


def test_transient_error_then_success(services, funded_brand, gateway):
    gateway.script = [GatewayUnavailableError("blip"), "tr_ok"]

    p = services.payouts.request_and_submit("brand", funded_brand, Money(500))

    assert p.status == PayoutStatus.TRANSFERRING
    assert p.transfer_ref == "tr_ok"
    assert p.attempts == 2


def test_rejected_transfer_fails_without_retry(services, funded_brand, gateway):
    gateway.script = [TransferRejectedError("destination invalid")]

    p = services.payouts.request_and_submit("brand", funded_brand, Money(500))

    assert p.status == PayoutStatus.FAILED
    assert len(gateway.calls) == 1
    assert services.ledger.available(BRAND, funded_brand) == Money(3750)


def test_payout_needs_an_active_account(services, seed):
    seed.brand()
    seed.credit("brand", "brand-1", 5000, "o-1")

    with pytest.raises(NeedsAccountSetupError):
        services.payouts.request_payout("brand", "brand-1", Money(1000))

    seed.account("brand", "brand-1", "acct_pending", active=False)
    with pytest.raises(NeedsAccountSetupError):
        services.payouts.request_payout("brand", "brand-1", Money(1000))

    assert db.session.query(PayoutRequest).count() == 0


def test_minimum_payout_amount(services, funded_brand):
    with pytest.raises(PayoutBelowMinimumError) as exc:
        services.payouts.request_payout("brand", funded_brand, Money(50))
    assert "1.00 USD" in str(exc.value)

    with pytest.raises(PayoutBelowMinimumError):
        services.payouts.request_payout("brand", funded_brand, Money(0))

    assert db.session.query(PayoutRequest).count() == 0
    assert services.ledger.available(BRAND, funded_brand) == Money(3750)


def test_cancel_releases_the_hold(services, funded_brand):
    p = services.payouts.request_payout("brand", funded_brand, Money(3000))
    c = services.payouts.cancel(p.public_id)

    assert c.status == PayoutStatus.CANCELLED
    assert services.ledger.available(BRAND, funded_brand) == Money(3750)

    with pytest.raises(InvalidPayoutStateError):
        services.payouts.cancel(p.public_id)


def test_cannot_cancel_after_transfer(services, funded_brand):
    p = services.payouts.request_and_submit("brand", funded_brand, Money(3000))
    with pytest.raises(InvalidPayoutStateError):
        services.payouts.cancel(p.public_id)


def test_payout_that_reached_the_gateway_cannot_be_cancelled(services, funded_brand, gateway, clock, monkeypatch):
    p = services.payouts.request_payout("brand", funded_brand, Money(3750))

    def crash(payout, transfer_ref):
        raise RuntimeError("worker died after the gateway accepted the transfer")

    with monkeypatch.context() as m:
        m.setattr(services.payouts, "_mark_transferring", crash)
        with pytest.raises(RuntimeError):
            services.payouts.submit(p.public_id)

    db.session.expire_all()
    stuck = services.payouts.get(p.public_id)
    assert stuck.status == PayoutStatus.REQUESTED
    assert stuck.attempts == 1
    assert len(gateway.calls) == 1

    # lease vencido: igual no se puede cancelar ni liberar el saldo
    clock.advance(seconds=601)
    with pytest.raises(InvalidPayoutStateError):
        services.payouts.cancel(p.public_id)
    assert services.ledger.available(BRAND, funded_brand) == Money(0)
    with pytest.raises(InsufficientBalanceError):
        services.payouts.request_payout("brand", funded_brand, Money(3750))

    # mismo Idempotency-Key => el proveedor devuelve el mismo transfer
    gateway.script = ["tr_test_1"]
    done = services.payouts.submit(p.public_id)
    assert done.status == PayoutStatus.TRANSFERRING
    assert done.transfer_ref == "tr_test_1"
    assert [c["idempotency_key"] for c in gateway.calls] == [f"payout-{p.public_id}"] * 2
    assert services.ledger.balance(BRAND, funded_brand) == Money(0)
    assert db.session.query(PayoutRequest).count() == 1


def test_deleted_brand_is_frozen(services, funded_brand):
    services.brands.soft_delete(funded_brand)
    with pytest.raises(PartyFrozenError):
        services.payouts.request_payout("brand", funded_brand, Money(1000))
    # el historial queda intacto
    assert services.ledger.balance(BRAND, funded_brand) == Money(3750)


def test_affiliate_payout(services, funded_brand, seed):
    seed.account("affiliate", "aff-1", "acct_aff_1")
    p = services.payouts.request_and_submit("affiliate", "aff-1", Money(1000))

    assert p.status == PayoutStatus.TRANSFERRING
    assert services.ledger.balance("affiliate", "aff-1") == Money(0)


def test_unknown_payout(services):
    with pytest.raises(PayoutNotFoundError):
        services.payouts.get("po_missing")
