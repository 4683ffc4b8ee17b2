"""
Polar Bridge - HTTP API Tests

Routers run against the in-memory runtime. Async setup goes through the
TestClient portal so every coroutine shares the app's event loop.
"""

from functools import partial

import pytest
from fastapi.testclient import TestClient

from conftest import BORROWER, DESTINATION, PINR, XLM, originate
from polarbridge.main import create_app
from polarbridge.models.schemas import LoanStatus
from polarbridge.services.loan_ledger import loan_id_for_event


@pytest.fixture
def client(runtime):
    app = create_app(runtime, start_jobs=False)
    with TestClient(app) as test_client:
        yield test_client


def run(client, func, *args, **kwargs):
    return client.portal.call(partial(func, *args, **kwargs))


def payback_data(loan_id, amount, to="5POOL"):
    return {"amount": str(amount), "from": BORROWER, "to": to, "memo": {"loan_id": loan_id}}


class TestHealth:

    def test_healthy(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert {job["name"] for job in body["jobs"]} == {
            "watch:stellar",
            "watch:polkadot",
            "settlement_retry",
            "accrual",
            "liquidation",
        }

    def test_halted_job_fails_health(self, client, runtime):
        runtime.job("accrual").health.halted = True
        response = client.get("/health")
        assert response.status_code == 503
        assert response.json()["status"] == "halted"

    def test_root(self, client):
        assert client.get("/").json()["source_chain"] == "stellar"


class TestLendingEndpoints:

    def test_config(self, client):
        body = client.get("/lending/config").json()
        assert body["collateral_asset"] == "XLM"
        assert body["policy"]["max_ltv"] == "0.75"
        assert body["asset_scales"]["PINR"] == PINR

    def test_preview(self, client):
        response = client.post("/loans/preview", json={
            "borrowed_amount": 500 * PINR,
            "ltv": "0.5",
            "duration_days": 30,
        })
        assert response.status_code == 200
        body = response.json()
        assert body["collateral_needed"] == 100 * XLM
        assert body["health_factor"] == "1.700000"

    def test_preview_invalid_ltv(self, client):
        response = client.post("/loans/preview", json={
            "borrowed_amount": 500 * PINR,
            "ltv": "0.9",
            "duration_days": 30,
        })
        assert response.status_code == 422
        assert response.json()["detail"]["error"] == "invalid_ltv"

    def test_float_amount_rejected(self, client):
        response = client.post("/loans/preview", json={"borrowed_amount": 500.5})
        assert response.status_code == 422


class TestLoanEndpoints:

    def test_originate_locks_and_settles(self, client, runtime, source, destination):
        response = client.post("/loans", json={
            "borrower": BORROWER,
            "collateral_amount": 100 * XLM,
            "destination_address": DESTINATION,
            "duration_days": 30,
        })
        assert response.status_code == 202
        body = response.json()
        assert body["source_event_id"] == f"stellar:{source.events[0].id}"
        assert body["loan_id"] == loan_id_for_event(body["source_event_id"])
        assert body["terms"]["borrowed_amount"] == 750 * PINR

        # Loan does not exist until the lock settles
        assert client.get(f"/loans/{body['loan_id']}").status_code == 404

        watcher = runtime.watchers[0]
        run(client, watcher.tick)
        run(client, runtime.dispatcher.drain)

        loan = client.get(f"/loans/{body['loan_id']}").json()
        assert loan["loan"]["status"] == "active"
        assert loan["health_status"] == "danger"
        assert loan["total_debt"] == 750 * PINR
        assert len(destination.transfers_for(body["source_event_id"])) == 1

    def test_originate_rejects_bad_terms(self, client, source):
        response = client.post("/loans", json={
            "borrower": BORROWER,
            "collateral_amount": 100 * XLM,
            "destination_address": DESTINATION,
            "duration_days": 7,
            "ltv": "0.8",
        })
        assert response.status_code == 422
        assert source.events == []

    def test_get_missing_loan(self, client):
        response = client.get("/loans/missing")
        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "loan_not_found"

    def test_list_loans(self, client, ledger):
        loan = run(client, originate, ledger)
        assert [item["id"] for item in client.get("/loans", params={"borrower": BORROWER}).json()] == [loan.id]
        assert client.get("/loans", params={"status": "repaid"}).json() == []

    def test_repay_requires_chain_evidence(self, client, ledger, source):
        """A bare amount is not proof of payment and leaves the loan open."""
        loan = run(client, originate, ledger)

        response = client.post(f"/loans/{loan.id}/repay", json={"amount": 500 * PINR})
        assert response.status_code == 422
        assert run(client, ledger.get_loan, loan.id).status == LoanStatus.ACTIVE
        assert source.transfers == []

    def test_repay_settles_payback_event(self, client, runtime, ledger, source, destination):
        loan = run(client, originate, ledger)
        paid = destination.emit("payback", payback_data(loan.id, 500 * PINR))

        response = client.post(f"/loans/{loan.id}/repay", json={"event_id": paid.id})
        assert response.status_code == 200
        body = response.json()
        assert body["settlement"]["source_event_id"] == f"polkadot:{paid.id}"
        assert body["settlement"]["status"] == "confirmed"
        assert body["loan"]["status"] == LoanStatus.REPAID.value
        assert body["loan"]["repayment_ref"] == f"polkadot:{paid.id}"

        run(client, runtime.dispatcher.drain)
        assert len(source.transfers_for(f"repay:{loan.id}:collateral")) == 1

        # Same evidence again, with the chain prefix: nothing new happens
        again = client.post(f"/loans/{loan.id}/repay", json={"event_id": f"polkadot:{paid.id}"})
        assert again.status_code == 200
        assert again.json()["settlement"]["version"] == body["settlement"]["version"]
        assert len(source.transfers_for(f"repay:{loan.id}:collateral")) == 1

    def test_short_payback_credited_loan_stays_open(self, client, ledger, store, destination):
        loan = run(client, originate, ledger)
        paid = destination.emit("payback", payback_data(loan.id, 100 * PINR))

        response = client.post(f"/loans/{loan.id}/repay", json={"event_id": paid.id})
        assert response.status_code == 200
        assert response.json()["settlement"]["outcome"] == "credited payer"
        assert response.json()["loan"]["status"] == LoanStatus.ACTIVE.value
        assert run(client, store.list_credits, BORROWER)[0].amount == 100 * PINR

    def test_repay_rejects_unknown_or_foreign_events(self, client, ledger, destination):
        loan = run(client, originate, ledger)

        missing = client.post(f"/loans/{loan.id}/repay", json={"event_id": "polkadot-evt-99"})
        assert missing.status_code == 404
        assert missing.json()["detail"]["error"] == "event_not_found"

        other = destination.emit("payback", payback_data("loan-other", 500 * PINR))
        mismatch = client.post(f"/loans/{loan.id}/repay", json={"event_id": other.id})
        assert mismatch.status_code == 422
        assert mismatch.json()["detail"]["error"] == "payback_loan_mismatch"

        elsewhere = destination.emit("payback", payback_data(loan.id, 500 * PINR, to="5ELSEWHERE"))
        wrong_pool = client.post(f"/loans/{loan.id}/repay", json={"event_id": elsewhere.id})
        assert wrong_pool.status_code == 422
        assert wrong_pool.json()["detail"]["error"] == "invalid_address"

        assert run(client, ledger.get_loan, loan.id).status == LoanStatus.ACTIVE

    def test_repay_missing_loan(self, client, destination):
        paid = destination.emit("payback", payback_data("missing", 500 * PINR))
        response = client.post("/loans/missing/repay", json={"event_id": paid.id})
        assert response.status_code == 404

    def test_payback_instructions(self, client, ledger):
        loan = run(client, originate, ledger)

        body = client.get(f"/loans/{loan.id}/payback").json()
        assert body == {
            "loan_id": loan.id,
            "chain": "polkadot",
            "pool_address": "5POOL",
            "asset": "PINR",
            "amount": 500 * PINR,
            "memo": {"loan_id": loan.id},
        }

        run(client, ledger.repay, loan.id, 500 * PINR)
        assert client.get(f"/loans/{loan.id}/payback").status_code == 409

    def test_borrower_summary(self, client, ledger):
        first = run(client, originate, ledger, loan_id="loan-a")
        run(client, originate, ledger, collateral=200 * XLM, borrowed=1000 * PINR, loan_id="loan-b")
        run(client, ledger.repay, first.id, 500 * PINR)

        body = client.get(f"/borrowers/{BORROWER}/summary").json()
        assert body["loan_count"] == 1
        assert body["total_collateral"] == 200 * XLM
        assert body["total_borrowed"] == 1000 * PINR
        assert body["collateral_asset"] == "XLM"

        empty = client.get("/borrowers/GNOBODY/summary").json()
        assert empty["loan_count"] == 0
        assert empty["total_debt"] == 0

    def test_add_collateral_locks_on_source(self, client, ledger, source):
        loan = run(client, originate, ledger)
        response = client.post(f"/loans/{loan.id}/collateral", json={"amount": 50 * XLM})

        assert response.status_code == 202
        [lock] = source.events
        assert lock.data["memo"]["loan_id"] == loan.id
        assert lock.data["amount"] == str(50 * XLM)

    def test_add_collateral_to_terminal_loan(self, client, ledger):
        loan = run(client, originate, ledger)
        run(client, ledger.repay, loan.id, 500 * PINR)

        response = client.post(f"/loans/{loan.id}/collateral", json={"amount": 50 * XLM})
        assert response.status_code == 409


class TestSettlementEndpoints:

    def test_list_and_get(self, client, ledger):
        loan = run(client, originate, ledger)
        run(client, ledger.repay, loan.id, 500 * PINR)

        key = f"repay:{loan.id}:collateral"
        keys = [r["source_event_id"] for r in client.get("/settlements").json()]
        assert key in keys
        assert client.get(f"/settlements/{key}").json()["event"]["amount"] == 100 * XLM
        assert client.get("/settlements/missing").status_code == 404

    def test_retry_requires_failed(self, client, ledger, dispatcher):
        loan = run(client, originate, ledger)
        run(client, ledger.repay, loan.id, 500 * PINR)
        run(client, dispatcher.drain)

        response = client.post(f"/settlements/repay:{loan.id}:collateral/retry")
        assert response.status_code == 409
        assert client.post("/settlements/missing/retry").status_code == 404
