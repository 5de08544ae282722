from decimal import Decimal

import pytest
from eth_account import Account

from conftest import log_in, use_session


class Participant:
    def __init__(self, client, settlement, eth="0", energy="1000"):
        self.account = Account.create()
        self.sid = log_in(client, self.account)
        self.id = client.get("/api/auth/me").json()["user"]["id"]
        self.wallet = self.account.address.lower()
        if eth != "0" or energy != "1000":
            # Balances are copied from the chain on lookup
            settlement.chain_balances[self.wallet] = (Decimal(eth), Decimal(energy))
            client.get(f"/api/users/{self.wallet}")
            del settlement.chain_balances[self.wallet]


def balances(client, participant):
    use_session(client, participant.sid)
    user = client.get(f"/api/users/{participant.wallet}").json()["user"]
    return Decimal(user["ethBalance"]), Decimal(user["energyBalance"]), Decimal(user["totalEarnings"])


def create_listing(client, seller, amount, rate, **extra):
    use_session(client, seller.sid)
    return client.post("/api/listings", json={"amountKWh": amount, "ratePerKWh": rate, **extra})


def buy(client, buyer, listing_id, amount, **extra):
    use_session(client, buyer.sid)
    return client.post("/api/transactions/buy", json={"listingId": listing_id, "amount": amount, **extra})


@pytest.fixture
def seller(client, settlement):
    return Participant(client, settlement, energy="500")


@pytest.fixture
def buyer(client, settlement):
    return Participant(client, settlement, eth="1", energy="0")


def test_active_listings_are_public(client):
    client.cookies.clear()

    response = client.get("/api/listings")

    assert response.status_code == 200
    assert response.json() == {"listings": []}


def test_mutations_require_session(client):
    client.cookies.clear()

    assert client.post("/api/listings", json={"amountKWh": 1, "ratePerKWh": 0.01}).status_code == 401
    assert client.post("/api/transactions/buy", json={"listingId": "x", "amount": 1}).status_code == 401
    assert client.delete("/api/listings/x").status_code == 401


def test_marketplace_flow(client, seller, buyer):
    response = create_listing(client, seller, "200", "0.001")

    assert response.status_code == 201, response.text
    listing = response.json()["listing"]
    assert listing["sellerId"] == seller.id
    assert Decimal(listing["amountKWh"]) == Decimal("200")
    assert Decimal(listing["ratePerKWh"]) == Decimal("0.001")
    assert Decimal(listing["totalValue"]) == Decimal("0.2")
    assert listing["isActive"] is True
    assert listing["blockchainTxHash"].startswith("0x")
    assert balances(client, seller)[1] == Decimal("300")

    active = client.get("/api/listings").json()["listings"]
    assert [item["id"] for item in active] == [listing["id"]]
    assert active[0]["seller"]["walletAddress"] == seller.wallet

    response = buy(client, buyer, listing["id"], "50")

    assert response.status_code == 201, response.text
    transaction = response.json()["transaction"]
    assert transaction["buyerId"] == buyer.id
    assert transaction["sellerId"] == seller.id
    assert Decimal(transaction["totalCost"]) == Decimal("0.05")
    assert transaction["status"] == "completed"
    assert transaction["transactionType"] == "buy"

    assert balances(client, buyer)[:2] == (Decimal("0.95"), Decimal("50"))
    assert balances(client, seller) == (Decimal("0.05"), Decimal("300"), Decimal("0.05"))

    (remaining,) = client.get("/api/listings").json()["listings"]
    assert Decimal(remaining["amountKWh"]) == Decimal("150")
    assert Decimal(remaining["totalValue"]) == Decimal("0.15")

    assert buy(client, buyer, listing["id"], "150").status_code == 201
    assert client.get("/api/listings").json()["listings"] == []

    closed = client.get(f"/api/listings/user/{seller.id}").json()["listings"]
    assert closed[0]["isActive"] is False
    assert Decimal(closed[0]["amountKWh"]) == Decimal("0")


def test_seller_comes_from_session(client, seller, buyer):
    response = create_listing(client, seller, "10", "0.01", sellerId=buyer.id)

    assert response.json()["listing"]["sellerId"] == seller.id


def test_create_listing_with_insufficient_energy(client, seller):
    response = create_listing(client, seller, "500.5", "0.01")

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INSUFFICIENT_BALANCE"


@pytest.mark.parametrize("payload", [
    {"amountKWh": 0, "ratePerKWh": 0.01},
    {"amountKWh": -5, "ratePerKWh": 0.01},
    {"amountKWh": "lots", "ratePerKWh": 0.01},
    {"ratePerKWh": 0.01},
    {"amountKWh": "1e21", "ratePerKWh": 0.01},
])
def test_create_listing_rejects_bad_input(client, seller, payload):
    use_session(client, seller.sid)

    response = client.post("/api/listings", json=payload)

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_INPUT"


def test_create_listing_replay(client, seller):
    first = create_listing(client, seller, "10", "0.01", blockchainTxHash="0xabc", blockchainListingId=4)
    second = create_listing(client, seller, "10", "0.01", blockchainTxHash="0xabc", blockchainListingId=4)

    assert first.json()["listing"]["id"] == second.json()["listing"]["id"]
    assert first.json()["listing"]["blockchainListingId"] == 4
    assert balances(client, seller)[1] == Decimal("490")


def test_buy_own_listing(client, seller):
    listing_id = create_listing(client, seller, "10", "0.01").json()["listing"]["id"]

    response = buy(client, seller, listing_id, "1")

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_INPUT"


def test_buy_more_than_listed(client, seller, buyer):
    listing_id = create_listing(client, seller, "10", "0.01").json()["listing"]["id"]

    response = buy(client, buyer, listing_id, "11")

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INSUFFICIENT_ENERGY"


def test_buy_without_enough_eth(client, seller, buyer):
    listing_id = create_listing(client, seller, "200", "0.01").json()["listing"]["id"]

    response = buy(client, buyer, listing_id, "150")

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INSUFFICIENT_BALANCE"


def test_buy_unknown_listing(client, buyer):
    response = buy(client, buyer, "no-such-listing", "1")

    assert response.status_code == 404


def test_settlement_failure_is_generic_500(client, seller, buyer, settlement):
    listing_id = create_listing(client, seller, "10", "0.01").json()["listing"]["id"]
    settlement.fail_operations.add("buy_energy")

    response = buy(client, buyer, listing_id, "5")

    assert response.status_code == 500
    error = response.json()["error"]
    assert error["code"] == "SETTLEMENT_FAILED"
    assert "reverted" not in error["message"]
    assert balances(client, buyer)[:2] == (Decimal("1"), Decimal("0"))
    use_session(client, buyer.sid)
    assert client.get(f"/api/transactions/user/{buyer.id}").json() == {"transactions": []}


def test_cancel_listing(client, seller, buyer):
    listing_id = create_listing(client, seller, "200", "0.001").json()["listing"]["id"]
    buy(client, buyer, listing_id, "50")

    use_session(client, seller.sid)
    response = client.delete(f"/api/listings/{listing_id}")

    assert response.status_code == 200
    assert response.json()["listing"]["isActive"] is False
    assert balances(client, seller)[1] == Decimal("450")
    assert client.get("/api/listings").json()["listings"] == []


def test_cancel_by_other_user_is_forbidden(client, seller, buyer):
    listing_id = create_listing(client, seller, "10", "0.01").json()["listing"]["id"]

    use_session(client, buyer.sid)
    response = client.delete(f"/api/listings/{listing_id}")

    assert response.status_code == 403
    assert response.json()["error"]["code"] == "FORBIDDEN"
    (listing,) = client.get("/api/listings").json()["listings"]
    assert listing["isActive"] is True
    assert Decimal(listing["amountKWh"]) == Decimal("10")


def test_transaction_history(client, seller, buyer):
    listing_id = create_listing(client, seller, "10", "0.01").json()["listing"]["id"]
    buy(client, buyer, listing_id, "4")

    for participant in (buyer, seller):
        use_session(client, participant.sid)
        (transaction,) = client.get(f"/api/transactions/user/{participant.id}").json()["transactions"]
        assert transaction["buyer"]["walletAddress"] == buyer.wallet
        assert transaction["seller"]["walletAddress"] == seller.wallet
        assert Decimal(transaction["amountKWh"]) == Decimal("4")


def test_transaction_history_of_other_user_is_forbidden(client, seller, buyer):
    use_session(client, buyer.sid)

    response = client.get(f"/api/transactions/user/{seller.id}")

    assert response.status_code == 403


def test_market_events_over_websocket(client, seller):
    client.cookies.clear()

    with client.websocket_connect("/ws") as websocket:
        hello = websocket.receive_json()
        assert hello["event"] == "connected"
        assert hello["data"] == {"authenticated": False}

        listing = create_listing(client, seller, "10", "0.01").json()["listing"]

        event = websocket.receive_json()
        assert event["event"] == "new_listing"
        assert event["data"]["id"] == listing["id"]
        assert isinstance(event["timestamp"], int)
