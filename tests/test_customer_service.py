"""
Tests for customer management
"""
import pytest

from credibill.db.models import Customer, WebhookDelivery
from credibill.exceptions import AuthorizationError, BillingValidationError, NotFoundError
from credibill.services.customer_service import CustomerService, normalize_email


@pytest.fixture
def merchant_app(make_app):
    return make_app(webhook_url="https://merchant.example/hooks", webhook_secret="whsec")


@pytest.fixture
def customers(db_session):
    return CustomerService(db_session)


class TestNormalizeEmail:

    def test_lowercases_and_strips(self):
        assert normalize_email("  Jane.Doe@Example.COM ") == "jane.doe@example.com"

    @pytest.mark.parametrize("email", ["", None, "no-at-sign", "@example.com", "jane@"])
    def test_invalid(self, email):
        with pytest.raises(BillingValidationError):
            normalize_email(email)


class TestCreateCustomer:

    def test_create(self, customers, db_session, merchant_app):
        customer = customers.create_customer(
            merchant_app.id, "Jane@Example.com", first_name="Jane", last_name="Doe",
            phone="+256700000001", metadata={"tier": "gold"},
        )

        assert customer.email == "jane@example.com"
        assert customer.full_name == "Jane Doe"
        assert customer.extra_metadata == {"tier": "gold"}
        delivery = db_session.query(WebhookDelivery).one()
        assert delivery.event == "customer.created"
        assert delivery.payload["customer"]["email"] == "jane@example.com"

    def test_email_unique_per_app(self, customers, merchant_app, make_app):
        customers.create_customer(merchant_app.id, "jane@example.com")

        with pytest.raises(BillingValidationError):
            customers.create_customer(merchant_app.id, "JANE@example.com")

        other = customers.create_customer(make_app(name="Other").id, "jane@example.com")
        assert other.id is not None


class TestUpdateCustomer:

    def test_update_records_changes(self, customers, db_session, merchant_app):
        customer = customers.create_customer(merchant_app.id, "jane@example.com", first_name="Jane")

        customers.update_customer(merchant_app.id, customer.id, first_name="Janet", phone="+256711111111")

        updated = db_session.query(WebhookDelivery).filter(WebhookDelivery.event == "customer.updated").one()
        assert updated.payload["changes"] == {
            "first_name": {"old": "Jane", "new": "Janet"},
            "phone": {"old": None, "new": "+256711111111"},
        }

    def test_no_changes_no_event(self, customers, db_session, merchant_app):
        customer = customers.create_customer(merchant_app.id, "jane@example.com", first_name="Jane")

        customers.update_customer(merchant_app.id, customer.id, first_name="Jane")

        assert db_session.query(WebhookDelivery).filter(WebhookDelivery.event == "customer.updated").count() == 0

    def test_email_conflict(self, customers, merchant_app):
        customers.create_customer(merchant_app.id, "taken@example.com")
        customer = customers.create_customer(merchant_app.id, "jane@example.com")

        with pytest.raises(BillingValidationError):
            customers.update_customer(merchant_app.id, customer.id, email="Taken@example.com")

    def test_unknown_field(self, customers, merchant_app):
        customer = customers.create_customer(merchant_app.id, "jane@example.com")

        with pytest.raises(BillingValidationError):
            customers.update_customer(merchant_app.id, customer.id, app_id=99)


class TestGetAndDelete:

    def test_other_apps_customer(self, customers, merchant_app, make_app):
        customer = customers.create_customer(merchant_app.id, "jane@example.com")

        with pytest.raises(AuthorizationError):
            customers.get_customer(make_app(name="Other").id, customer.id)

    def test_missing_customer(self, customers, merchant_app):
        with pytest.raises(NotFoundError):
            customers.get_customer(merchant_app.id, 404)

    def test_delete_emits_event(self, customers, db_session, merchant_app):
        customer = customers.create_customer(merchant_app.id, "jane@example.com")
        customer_id = customer.id

        counts = customers.delete_customer(merchant_app.id, customer_id)

        assert counts == {}
        assert db_session.query(Customer).count() == 0
        deleted = db_session.query(WebhookDelivery).filter(WebhookDelivery.event == "customer.deleted").one()
        assert deleted.payload["customer"]["id"] == customer_id

    def test_list_customers(self, customers, merchant_app):
        for n in range(3):
            customers.create_customer(merchant_app.id, f"user{n}@example.com")

        assert len(customers.list_customers(merchant_app.id, limit=2)) == 2
        assert len(customers.list_customers(merchant_app.id)) == 3
