from __future__ import annotations

from uuid import uuid4

from conftest import add_personal_document, make_product


def _create_body(world, **overrides) -> dict:
    body = {
        "business_id": str(world["business"].id),
        "entrepreneur_id": str(world["entrepreneur"].id),
        "loan_product_id": str(world["product"].id),
        "funding_amount": "250000.00",
        "funding_currency": "KES",
        "repayment_period": 12,
        "intended_use_of_funds": "inventory",
        "interest_rate": "14.5",
    }
    body.update(overrides)
    return body


async def test_entrepreneur_submits_application(api, world, actors) -> None:
    async with api(actors["entrepreneur"]) as client:
        response = await client.post("/api/v1/me/loan-applications", json=_create_body(world))

    assert response.status_code == 201
    body = response.json()
    assert body["code"] == "created"
    assert body["details"] == {}
    assert body["data"]["status"] == "pending"
    assert body["data"]["loan_id"].startswith("LN-")


async def test_invalid_payload_uses_error_envelope(api, world, actors) -> None:
    async with api(actors["entrepreneur"]) as client:
        response = await client.post(
            "/api/v1/me/loan-applications", json=_create_body(world, repayment_period=0)
        )

    assert response.status_code == 422
    body = response.json()
    assert body["code"] == "validation_error"
    assert body["data"] is None


async def test_out_of_range_amount_is_rejected(api, world, actors) -> None:
    async with api(actors["entrepreneur"]) as client:
        response = await client.post(
            "/api/v1/me/loan-applications", json=_create_body(world, funding_amount="5000.00")
        )

    assert response.status_code == 422
    assert response.json()["code"] == "amount_out_of_range"


async def test_entrepreneur_cannot_read_someone_elses_application(api, submit, actors) -> None:
    application = await submit()

    async with api(actors["other_entrepreneur"]) as client:
        response = await client.get(f"/api/v1/me/loan-applications/{application.id}")

    assert response.status_code == 403
    body = response.json()
    assert body["code"] == "forbidden"
    assert body["data"] is None


async def test_admin_routes_require_staff(api, actors) -> None:
    async with api(actors["entrepreneur"]) as client:
        response = await client.get("/api/v1/admin/loan-applications")

    assert response.status_code == 403
    assert response.json()["details"]["required_role"] == "member"


async def test_unknown_application_is_not_found(api, actors) -> None:
    async with api(actors["member"]) as client:
        response = await client.get(f"/api/v1/admin/loan-applications/{uuid4()}")

    assert response.status_code == 404
    assert response.json()["code"] == "not_found"


async def test_staff_moves_application_forward(api, submit, actors, cache) -> None:
    application = await submit()

    async with api(actors["member"]) as client:
        response = await client.post(
            f"/api/v1/admin/loan-applications/{application.id}/transitions",
            json={"status": "eligibility_check"},
        )
        skipped = await client.post(
            f"/api/v1/admin/loan-applications/{application.id}/transitions",
            json={"status": "committee_decision"},
        )

    assert response.status_code == 200
    assert response.json()["data"]["status"] == "eligibility_check"
    assert str(application.id) in cache.invalidated
    assert skipped.status_code == 409
    assert skipped.json()["code"] == "invalid_transition"


async def test_entrepreneur_sees_public_status_and_timeline(api, submit, actors) -> None:
    application = await submit()

    async with api(actors["member"]) as staff:
        await staff.post(
            f"/api/v1/admin/loan-applications/{application.id}/transitions",
            json={"status": "eligibility_check"},
        )
    async with api(actors["entrepreneur"]) as client:
        detail = await client.get(f"/api/v1/me/loan-applications/{application.id}")
        timeline = await client.get(f"/api/v1/me/loan-applications/{application.id}/timeline")

    assert detail.json()["data"]["status"] == "pending"
    items = timeline.json()["data"]["items"]
    assert [item["event_type"] for item in items] == ["submitted"]


async def test_entrepreneur_cancels_own_application(api, submit, actors, notifier) -> None:
    application = await submit()

    async with api(actors["entrepreneur"]) as client:
        response = await client.post(
            f"/api/v1/me/loan-applications/{application.id}/cancel", json={"reason": "Found other funding"}
        )

    assert response.status_code == 200
    assert response.json()["data"]["status"] == "cancelled"
    assert notifier.templates() == ["loan_application_cancelled"]


async def test_soft_delete_returns_empty_envelope(api, submit, actors) -> None:
    application = await submit()

    async with api(actors["admin"]) as client:
        deleted = await client.delete(f"/api/v1/admin/loan-applications/{application.id}")
        lookup = await client.get(f"/api/v1/admin/loan-applications/{application.id}")

    assert deleted.status_code == 200
    assert deleted.json() == {"code": "ok", "message": "OK", "data": None, "details": {}}
    assert lookup.status_code == 404


async def test_counter_offer_and_activation_over_http(api, submit, actors) -> None:
    application = await submit()
    original_id = str(application.active_version_id)

    async with api(actors["member"]) as client:
        offer = await client.post(
            f"/api/v1/admin/loan-applications/{application.id}/counter-offers",
            json={"funding_amount": "200000", "repayment_period": 10, "interest_rate": "15"},
        )
        offer_id = offer.json()["data"]["id"]
        activated = await client.post(
            f"/api/v1/admin/loan-applications/{application.id}/versions/{offer_id}/activate",
            json={"expected_active_version_id": original_id},
        )
        stale = await client.post(
            f"/api/v1/admin/loan-applications/{application.id}/versions/{original_id}/activate",
            json={"expected_active_version_id": original_id},
        )
        versions = await client.get(f"/api/v1/admin/loan-applications/{application.id}/versions")

    assert offer.status_code == 201
    assert activated.status_code == 200
    assert stale.status_code == 409
    assert stale.json()["code"] == "concurrent_update"
    assert versions.json()["data"]["active_version_id"] == offer_id
    assert versions.json()["data"]["total"] == 2


async def test_document_gate_and_verification_over_http(api, db, world, submit, actors) -> None:
    document = await add_personal_document(db, world["entrepreneur"])
    await db.commit()
    application = await submit()
    base = f"/api/v1/admin/loan-applications/{application.id}"

    async with api(actors["member"]) as client:
        closed = await client.get(f"{base}/document-gate", params={"stage": "eligibility_check"})
        verified = await client.post(
            f"{base}/document-verifications",
            json={"document_type": "personal", "document_id": str(document.id), "outcome": "approved"},
        )
        opened = await client.get(f"{base}/document-gate", params={"stage": "eligibility_check"})
        events = await client.get(f"{base}/audit-events", params={"event_type": "document_verified_approved"})

    assert closed.json()["data"]["passed"] is False
    assert verified.json()["data"]["verification_status"] == "approved"
    assert opened.json()["data"]["passed"] is True
    assert events.json()["data"]["total"] == 1


async def test_locked_document_returns_423(api, db, world, actors, submit) -> None:
    document = await add_personal_document(db, world["entrepreneur"], "passport")
    await db.commit()
    application = await submit()

    async with api(actors["member"]) as staff:
        await staff.post(
            f"/api/v1/admin/loan-applications/{application.id}/document-verifications",
            json={"document_type": "personal", "document_id": str(document.id), "outcome": "approved"},
        )
    async with api(actors["entrepreneur"]) as client:
        response = await client.put(
            f"/api/v1/users/{world['entrepreneur'].id}/documents",
            json={"doc_type": "passport", "doc_url": "https://files.example.com/passport-2.pdf"},
        )

    assert response.status_code == 423
    assert response.json()["code"] == "document_locked"


async def test_entrepreneur_only_sees_active_products(api, db, world, actors) -> None:
    await make_product(db, world["organization"], world["admin"], name="Pilot Product", status="draft", version=1)
    await db.commit()

    async with api(actors["entrepreneur"]) as client:
        response = await client.get("/api/v1/loan-products", params={"include_archived": "true"})

    data = response.json()["data"]
    assert data["total"] == 1
    assert data["items"][0]["id"] == str(world["product"].id)


async def test_product_status_change_over_http(api, world, actors) -> None:
    async with api(actors["admin"]) as client:
        response = await client.post(
            f"/api/v1/loan-products/{world['product'].id}/status",
            json={
                "status": "archived",
                "change_reason": "Replaced by new pricing",
                "approved_by": str(world["super_admin"].id),
            },
        )

    assert response.status_code == 200
    assert response.json()["data"]["status"] == "archived"
