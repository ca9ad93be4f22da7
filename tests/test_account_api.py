from pitchpractice.backend.billing import CheckoutSessionInfo, upsert_entitlement
from pitchpractice.backend.plans import Plan


def test_plan_defaults_to_free(client):
    assert client.get("/api/plan").json() == {
        "plan": "free",
        "features": {"edit_rubrics": False, "premium_insights": False, "progress_panel": False},
    }


def test_plan_reflects_entitlement(client, store, alice):
    upsert_entitlement(
        store,
        checkout_session_id="cs_1",
        plan=Plan.COACH,
        user_id="user-alice",
        session_id=None,
        price_id="price_coach",
        customer_id="cus_1",
    )

    body = client.get("/api/plan", headers=alice).json()

    assert body["plan"] == "coach"
    assert all(body["features"].values())


def test_daypass_for_anonymous_session(client, store):
    upsert_entitlement(
        store,
        checkout_session_id="cs_day",
        plan=Plan.DAYPASS,
        user_id=None,
        session_id="sess-7",
        price_id="price_daypass",
        customer_id=None,
    )

    body = client.get("/api/plan", params={"session_id": "sess-7"}).json()

    assert body["plan"] == "daypass"
    assert body["features"] == {"edit_rubrics": False, "premium_insights": True, "progress_panel": False}


def test_checkout_and_sync_routes(client, payments, alice):
    checkout = client.post("/api/stripe/checkout", json={"plan": "coach"}, headers=alice).json()
    assert checkout == {"ok": True, "url": "https://checkout.test/cs_test_new", "checkout_session_id": "cs_test_new"}

    assert client.post("/api/stripe/checkout", json={"plan": "gold"}).status_code == 400

    payments.sessions["cs_test_new"] = CheckoutSessionInfo(
        id="cs_test_new",
        payment_status="paid",
        customer_id="cus_9",
        price_id="price_coach",
        metadata={"plan": "coach", "user_id": "user-alice"},
    )
    synced = client.post("/api/stripe/sync", json={"checkout_session_id": "cs_test_new"}, headers=alice).json()
    assert synced["plan"] == "coach"
    assert synced["entitlement"]["user_id"] == "user-alice"

    portal = client.post("/api/stripe/portal", headers=alice).json()
    assert portal == {"ok": True, "url": "https://billing.test/cus_9"}


def test_sync_unknown_session_is_500(client):
    response = client.post("/api/stripe/sync", json={"checkout_session_id": "cs_missing"})

    assert response.status_code == 500
    assert response.json()["kind"] == "invalid_request"


def test_portal_without_purchase_is_400(client, alice):
    assert client.post("/api/stripe/portal", headers=alice).status_code == 400


def test_webhook_route(client, store, payments):
    payments.webhook_event = (
        "checkout.session.completed",
        CheckoutSessionInfo(id="cs_hook", payment_status="paid", price_id="price_starter", metadata={}),
    )

    rejected = client.post("/api/stripe/webhook", content=b"{}", headers={"stripe-signature": "forged"})
    accepted = client.post("/api/stripe/webhook", content=b"{}", headers={"stripe-signature": "valid"})

    assert rejected.status_code == 400
    assert accepted.json()["handled"] is True
    entitlement = store.get_entitlement("cs_hook")
    assert entitlement.plan == "starter"
    assert entitlement.user_id is None


def test_check_email(client, auth):
    assert client.post("/api/auth/check-email", json={"email": " Alice@Example.com "}).json() == {"exists": True}
    assert client.post("/api/auth/check-email", json={"email": "nobody@example.com"}).json() == {"exists": False}
    assert client.post("/api/auth/check-email", json={"email": "not-an-email"}).status_code == 400


def test_check_email_fails_open(client, auth):
    auth.lookup_error = RuntimeError("auth admin API down")

    response = client.post("/api/auth/check-email", json={"email": "alice@example.com"})

    assert response.status_code == 200
    assert response.json() == {"exists": False}
