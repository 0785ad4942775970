import pytest

from voucher_portal.core import tasks


def test_actors_registered_on_stub_broker():
    names = set(tasks.broker.get_declared_actors())
    assert {
        "deliver_notification",
        "process_voucher_expirations",
        "generate_vendor_invoices",
        "process_inbound_email",
    } <= names
    assert type(tasks.broker).__name__ == "StubBroker"


def test_run_job_returns_result_and_reraises():
    async def ok(db):
        return 42

    assert tasks.run_job("ok", ok) == 42

    async def boom(db):
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError, match="boom"):
        tasks.run_job("boom", boom)
