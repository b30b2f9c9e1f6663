import unittest
from datetime import date
from decimal import Decimal
from unittest.mock import patch

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from forex_backend import main
from forex_backend.currency_conversion import (
    FallbackTables,
    ForexService,
    RateCache,
    RateSnapshot,
    UpstreamUnavailable,
)


class StubClient:
    def __init__(self) -> None:
        self.latest_snapshots = {
            "USD": RateSnapshot(
                base="USD",
                as_of_date="2026-10-16",
                rates={"EUR": Decimal("0.92"), "ILS": Decimal("3.7")},
            ),
            "EUR": RateSnapshot(
                base="EUR",
                as_of_date="2026-10-16",
                rates={"ILS": Decimal("4"), "USD": Decimal("1.08")},
            ),
            "ILS": RateSnapshot(
                base="ILS",
                as_of_date="2026-10-16",
                rates={"USD": Decimal("0.27")},
            ),
        }
        self.history_rates = {
            "2026-10-02": {"EUR": Decimal("0.93")},
            "2026-10-01": {"EUR": Decimal("0.92")},
        }
        self.currencies_available = True

    def latest(self, base: str) -> RateSnapshot:
        if base not in self.latest_snapshots:
            raise UpstreamUnavailable("unknown base")
        return self.latest_snapshots[base]

    def history(self, base, target, start, end):
        return self.history_rates

    def currencies(self):
        if not self.currencies_available:
            raise UpstreamUnavailable("down")
        return {"EUR": "Euro", "ILS": "Israeli New Shekel", "USD": "United States Dollar"}


class ForexApiTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        main.metadata.create_all(self.engine)
        self.stub = StubClient()
        self.service = ForexService(
            client=self.stub,
            cache=RateCache(ttl_seconds=1800),
            fallback=FallbackTables(version="test", anchor="ILS", rates={}, currencies={"ILS": "Shekel"}),
            home_currency="ILS",
            today=lambda: date(2026, 10, 18),
        )
        patches = [
            patch.object(main, "engine", self.engine),
            patch.object(main, "FOREX_SERVICE", self.service),
        ]
        for patcher in patches:
            patcher.start()
            self.addCleanup(patcher.stop)
        self.client = TestClient(main.app)

    def create_household(self, name: str = "Home", home_currency: str | None = "ILS") -> dict:
        response = self.client.post("/households", json={"name": name, "home_currency": home_currency})
        self.assertEqual(response.status_code, 200, response.text)
        return {"x-household-id": str(response.json()["id"])}

    def create_account(self, headers: dict, **overrides) -> dict:
        body = {"name": "Travel wallet", "currency": "usd", "balance": 100}
        body.update(overrides)
        response = self.client.post("/api/forex/accounts", json=body, headers=headers)
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()

    def transfer_body(self, **overrides) -> dict:
        body = {
            "type": "BUY",
            "from_currency": "ILS",
            "to_currency": "USD",
            "from_amount": 370,
            "to_amount": 100,
            "exchange_rate": 0.27,
            "date": "2026-10-01",
        }
        body.update(overrides)
        return body


class RateEndpointTests(ForexApiTestCase):
    def test_health(self) -> None:
        response = self.client.get("/health")

        self.assertEqual(response.json(), {"status": "ok"})

    def test_rates_for_base(self) -> None:
        response = self.client.get("/api/forex/rates", params={"base": "usd"})

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["base"], "USD")
        self.assertEqual(body["date"], "2026-10-16")
        self.assertEqual(body["rates"]["EUR"], 0.92)

    def test_rates_rejects_malformed_code(self) -> None:
        response = self.client.get("/api/forex/rates", params={"base": "DOLLAR"})

        self.assertEqual(response.status_code, 400)

    def test_convert(self) -> None:
        response = self.client.get(
            "/api/forex/convert", params={"amount": "10", "from": "USD", "to": "EUR"}
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["result"], 9.2)
        self.assertEqual(body["rate"], 0.92)
        self.assertEqual(body["from_currency"], "USD")
        self.assertEqual(body["to_currency"], "EUR")

    def test_convert_same_currency(self) -> None:
        response = self.client.get(
            "/api/forex/convert", params={"amount": "100", "from": "ILS", "to": "ILS"}
        )

        self.assertEqual(response.json()["result"], 100)
        self.assertEqual(response.json()["rate"], 1)

    def test_convert_unparseable_amount_is_zero(self) -> None:
        response = self.client.get(
            "/api/forex/convert", params={"amount": "lots", "from": "USD", "to": "EUR"}
        )

        self.assertEqual(response.json()["result"], 0)

    def test_convert_uses_leading_numeric_prefix(self) -> None:
        response = self.client.get(
            "/api/forex/convert", params={"amount": "12abc", "from": "USD", "to": "EUR"}
        )

        self.assertEqual(response.json()["amount"], 12)
        self.assertEqual(response.json()["result"], 11.04)

    def test_convert_amount_too_large_is_bad_request(self) -> None:
        response = self.client.get(
            "/api/forex/convert", params={"amount": "1e30", "from": "USD", "to": "EUR"}
        )

        self.assertEqual(response.status_code, 400)

    def test_convert_unresolvable_pair_is_not_found(self) -> None:
        response = self.client.get(
            "/api/forex/convert", params={"amount": "10", "from": "USD", "to": "XYZ"}
        )

        self.assertEqual(response.status_code, 404)
        self.assertIn("USD -> XYZ", response.json()["detail"])

    def test_history(self) -> None:
        response = self.client.get(
            "/api/forex/history",
            params={"from": "USD", "to": "EUR", "start": "2026-10-01", "end": "2026-10-02"},
        )

        body = response.json()
        self.assertEqual(body["base"], "USD")
        self.assertEqual(body["target"], "EUR")
        self.assertEqual([point["date"] for point in body["rates"]], ["2026-10-01", "2026-10-02"])

    def test_history_rejects_inverted_range(self) -> None:
        response = self.client.get(
            "/api/forex/history",
            params={"from": "USD", "to": "EUR", "start": "2026-10-05", "end": "2026-10-01"},
        )

        self.assertEqual(response.status_code, 400)

    def test_history_rejects_malformed_dates(self) -> None:
        for params in ({"start": "10/01/2026"}, {"end": "yesterday"}):
            with self.subTest(params=params):
                response = self.client.get(
                    "/api/forex/history", params={"from": "USD", "to": "EUR", **params}
                )
                self.assertEqual(response.status_code, 400)

    def test_currencies_fall_back_when_provider_down(self) -> None:
        self.stub.currencies_available = False

        response = self.client.get("/api/forex/currencies")

        self.assertEqual(response.json(), {"ILS": "Shekel"})


class HouseholdEndpointTests(ForexApiTestCase):
    def test_missing_identity_is_unauthorized(self) -> None:
        response = self.client.get("/api/forex/accounts")

        self.assertEqual(response.status_code, 401)

    def test_invalid_identity_is_bad_request(self) -> None:
        response = self.client.get("/api/forex/accounts", headers={"x-household-id": "abc"})

        self.assertEqual(response.status_code, 400)

    def test_unknown_household_is_not_found(self) -> None:
        response = self.client.get("/api/forex/accounts", headers={"x-household-id": "999"})

        self.assertEqual(response.status_code, 404)

    def test_settings_round_trip(self) -> None:
        headers = self.create_household(home_currency=None)

        self.assertEqual(
            self.client.get("/households/me/settings", headers=headers).json()["home_currency"],
            main.settings.HOME_CURRENCY,
        )

        response = self.client.put(
            "/households/me/settings", json={"home_currency": "eur"}, headers=headers
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["home_currency"], "EUR")

    def test_settings_rejects_bad_currency(self) -> None:
        headers = self.create_household()

        response = self.client.put(
            "/households/me/settings", json={"home_currency": "EURO"}, headers=headers
        )

        self.assertEqual(response.status_code, 400)


class ForexAccountEndpointTests(ForexApiTestCase):
    def test_create_and_list_accounts(self) -> None:
        headers = self.create_household()
        account = self.create_account(headers, provider=" Wise ")

        self.assertEqual(account["currency"], "USD")
        self.assertEqual(account["provider"], "Wise")
        self.assertEqual(Decimal(str(account["balance"])), Decimal("100"))
        self.assertTrue(account["is_active"])
        self.assertEqual(account["transfer_count"], 0)

        listed = self.client.get("/api/forex/accounts", headers=headers).json()
        self.assertEqual([item["id"] for item in listed], [account["id"]])

    def test_account_validation(self) -> None:
        headers = self.create_household()

        blank = self.client.post(
            "/api/forex/accounts", json={"name": " ", "currency": "USD"}, headers=headers
        )
        bad_currency = self.client.post(
            "/api/forex/accounts", json={"name": "Wallet", "currency": "US"}, headers=headers
        )

        self.assertEqual(blank.status_code, 400)
        self.assertEqual(bad_currency.status_code, 400)

    def test_accounts_are_scoped_to_household(self) -> None:
        owner = self.create_household("Owner")
        other = self.create_household("Other")
        account = self.create_account(owner)

        response = self.client.get(f"/api/forex/accounts/{account['id']}", headers=other)

        self.assertEqual(response.status_code, 404)
        self.assertEqual(self.client.get("/api/forex/accounts", headers=other).json(), [])

    def test_partial_update_and_deactivate(self) -> None:
        headers = self.create_household()
        account = self.create_account(headers)

        response = self.client.put(
            f"/api/forex/accounts/{account['id']}",
            json={"notes": "Trip money", "is_active": False},
            headers=headers,
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["notes"], "Trip money")
        self.assertEqual(body["name"], "Travel wallet")
        self.assertFalse(body["is_active"])
        self.assertEqual(self.client.get("/api/forex/accounts", headers=headers).json(), [])

    def test_update_rejects_blank_name(self) -> None:
        headers = self.create_household()
        account = self.create_account(headers)

        response = self.client.put(
            f"/api/forex/accounts/{account['id']}", json={"name": ""}, headers=headers
        )

        self.assertEqual(response.status_code, 400)

    def test_update_missing_account(self) -> None:
        headers = self.create_household()

        response = self.client.put("/api/forex/accounts/42", json={"notes": "x"}, headers=headers)

        self.assertEqual(response.status_code, 404)

    def test_delete_account_detaches_transfers(self) -> None:
        headers = self.create_household()
        account = self.create_account(headers)
        transfer = self.client.post(
            "/api/forex/transfers",
            json=self.transfer_body(forex_account_id=account["id"]),
            headers=headers,
        ).json()

        deleted = self.client.delete(f"/api/forex/accounts/{account['id']}", headers=headers)

        self.assertEqual(deleted.json(), {"status": "deleted"})
        transfers = self.client.get("/api/forex/transfers", headers=headers).json()
        self.assertEqual(transfers[0]["id"], transfer["id"])
        self.assertIsNone(transfers[0]["forex_account_id"])
        self.assertIsNone(transfers[0]["forex_account"])
        self.assertEqual(
            self.client.delete(f"/api/forex/accounts/{account['id']}", headers=headers).status_code,
            404,
        )

    def test_summary_converts_balances_to_home_currency(self) -> None:
        headers = self.create_household(home_currency="ILS")
        self.create_account(headers, name="Dollars", currency="USD", balance=100)
        self.create_account(headers, name="Euros", currency="EUR", balance=50)
        self.create_account(headers, name="Mystery", currency="XYZ", balance=10)

        response = self.client.get("/api/forex/accounts/summary", headers=headers)

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["currency"], "ILS")
        self.assertEqual(Decimal(str(body["total"])), Decimal("570.00"))
        self.assertEqual([entry["name"] for entry in body["accounts"]], ["Dollars", "Euros"])
        self.assertEqual(body["unconverted"], ["XYZ"])

    def test_summary_target_currency_override(self) -> None:
        headers = self.create_household(home_currency="ILS")
        self.create_account(headers, name="Euros", currency="EUR", balance=10)

        body = self.client.get(
            "/api/forex/accounts/summary", params={"currency": "usd"}, headers=headers
        ).json()

        self.assertEqual(body["currency"], "USD")
        self.assertEqual(Decimal(str(body["total"])), Decimal("10.80"))


class ForexTransferEndpointTests(ForexApiTestCase):
    def test_buy_increases_linked_account_balance(self) -> None:
        headers = self.create_household()
        account = self.create_account(headers)

        response = self.client.post(
            "/api/forex/transfers",
            json=self.transfer_body(forex_account_id=account["id"], type="buy"),
            headers=headers,
        )

        self.assertEqual(response.status_code, 200, response.text)
        body = response.json()
        self.assertEqual(body["type"], "BUY")
        self.assertEqual(body["forex_account"]["name"], "Travel wallet")
        refreshed = self.client.get(f"/api/forex/accounts/{account['id']}", headers=headers).json()
        self.assertEqual(Decimal(str(refreshed["balance"])), Decimal("200"))
        self.assertEqual(refreshed["transfer_count"], 1)

    def test_sell_decreases_linked_account_balance(self) -> None:
        headers = self.create_household()
        account = self.create_account(headers)

        self.client.post(
            "/api/forex/transfers",
            json=self.transfer_body(
                forex_account_id=account["id"],
                type="SELL",
                from_currency="USD",
                to_currency="ILS",
                from_amount=40,
                to_amount=148,
                exchange_rate=3.7,
            ),
            headers=headers,
        )

        refreshed = self.client.get(f"/api/forex/accounts/{account['id']}", headers=headers).json()
        self.assertEqual(Decimal(str(refreshed["balance"])), Decimal("60"))

    def test_unlinked_transfer_leaves_balances_alone(self) -> None:
        headers = self.create_household()
        account = self.create_account(headers)

        response = self.client.post("/api/forex/transfers", json=self.transfer_body(), headers=headers)

        self.assertIsNone(response.json()["forex_account_id"])
        refreshed = self.client.get(f"/api/forex/accounts/{account['id']}", headers=headers).json()
        self.assertEqual(Decimal(str(refreshed["balance"])), Decimal("100"))

    def test_transfer_to_foreign_account_is_not_found(self) -> None:
        owner = self.create_household("Owner")
        other = self.create_household("Other")
        account = self.create_account(owner)

        response = self.client.post(
            "/api/forex/transfers",
            json=self.transfer_body(forex_account_id=account["id"]),
            headers=other,
        )

        self.assertEqual(response.status_code, 404)

    def test_transfer_validation(self) -> None:
        headers = self.create_household()
        invalid_bodies = [
            self.transfer_body(type="SWAP"),
            self.transfer_body(from_amount=0),
            self.transfer_body(exchange_rate=-1),
            self.transfer_body(fee=-2),
            self.transfer_body(to_currency="DOLLARS"),
        ]

        for body in invalid_bodies:
            with self.subTest(body=body):
                response = self.client.post("/api/forex/transfers", json=body, headers=headers)
                self.assertEqual(response.status_code, 400)

    def test_list_filters_by_account_and_orders_by_date(self) -> None:
        headers = self.create_household()
        account = self.create_account(headers)
        self.client.post(
            "/api/forex/transfers",
            json=self.transfer_body(forex_account_id=account["id"], date="2026-09-01"),
            headers=headers,
        )
        self.client.post(
            "/api/forex/transfers",
            json=self.transfer_body(forex_account_id=account["id"], date="2026-10-01"),
            headers=headers,
        )
        self.client.post("/api/forex/transfers", json=self.transfer_body(), headers=headers)

        filtered = self.client.get(
            "/api/forex/transfers", params={"account_id": account["id"]}, headers=headers
        ).json()
        everything = self.client.get("/api/forex/transfers", headers=headers).json()

        self.assertEqual([item["date"] for item in filtered], ["2026-10-01", "2026-09-01"])
        self.assertEqual(len(everything), 3)

    def test_partial_update(self) -> None:
        headers = self.create_household()
        transfer = self.client.post(
            "/api/forex/transfers", json=self.transfer_body(), headers=headers
        ).json()

        response = self.client.put(
            f"/api/forex/transfers/{transfer['id']}",
            json={"description": "Airport kiosk", "date": "2026-10-05"},
            headers=headers,
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["description"], "Airport kiosk")
        self.assertEqual(body["date"], "2026-10-05")
        self.assertEqual(body["type"], "BUY")

    def test_update_rejects_invalid_values(self) -> None:
        headers = self.create_household()
        transfer = self.client.post(
            "/api/forex/transfers", json=self.transfer_body(), headers=headers
        ).json()

        negative = self.client.put(
            f"/api/forex/transfers/{transfer['id']}", json={"to_amount": -5}, headers=headers
        )
        cleared = self.client.put(
            f"/api/forex/transfers/{transfer['id']}", json={"type": None}, headers=headers
        )

        self.assertEqual(negative.status_code, 400)
        self.assertEqual(cleared.status_code, 400)

    def test_delete_transfer(self) -> None:
        headers = self.create_household()
        transfer = self.client.post(
            "/api/forex/transfers", json=self.transfer_body(), headers=headers
        ).json()

        first = self.client.delete(f"/api/forex/transfers/{transfer['id']}", headers=headers)
        second = self.client.delete(f"/api/forex/transfers/{transfer['id']}", headers=headers)

        self.assertEqual(first.json(), {"status": "deleted"})
        self.assertEqual(second.status_code, 404)


if __name__ == "__main__":
    unittest.main()
