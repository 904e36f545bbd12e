from decimal import Decimal

from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand, CommandError
from django.utils import timezone

from inventory.models import Product, Purchase, Vendor
from inventory.services import create_product, create_purchase, receive_purchase
from sales.models import Customer, Invoice
from sales.services import record_sale


class Command(BaseCommand):
    help = "Seed demo catalog, parties and orders for local development."

    def _user(self, username, role, password, **extra):
        User = get_user_model()
        user, created = User.objects.get_or_create(
            username=username,
            defaults={"email": f"{username}@example.com", "role": role, "is_active": True, **extra},
        )
        if created:
            user.set_password(password)
            user.save(update_fields=["password"])
        return user

    def _product(self, user, vendor, *, sku, **fields):
        product = Product.objects.filter(sku=sku).first()
        if product is not None:
            return product
        result = create_product({"sku": sku, "vendor": vendor, **fields}, user=user)
        if not result.accepted:
            raise CommandError(f"Could not create {sku}: {result.message}")
        return result.value

    def handle(self, *args, **options):
        User = get_user_model()
        admin_user = self._user("admin", User.Role.ADMIN, "admin1234", is_staff=True, is_superuser=True)
        self._user("manager", User.Role.MANAGER, "manager1234")
        self._user("staff", User.Role.STAFF, "staff1234")

        vendor, _ = Vendor.objects.get_or_create(
            name="Local Supplier",
            defaults={"contact_person": "Supplier Contact", "phone": "+100000000", "email": "supplier@example.com"},
        )
        customer, _ = Customer.objects.get_or_create(
            name="Demo Customer",
            defaults={"phone": "+201000000001", "email": "customer@example.com"},
        )

        cola = self._product(
            admin_user,
            vendor,
            sku="SKU-COLA-001",
            name="Cola 330ml",
            category="Beverages",
            purchase_price=Decimal("0.90"),
            selling_price=Decimal("1.50"),
            reorder_level=20,
            quantity=120,
        )
        chips = self._product(
            admin_user,
            vendor,
            sku="SKU-CHIPS-001",
            name="Potato Chips",
            category="Snacks",
            purchase_price=Decimal("1.10"),
            selling_price=Decimal("2.00"),
            reorder_level=10,
            quantity=6,
        )

        today = timezone.localdate()
        if not Purchase.objects.exists():
            result = create_purchase(
                {
                    "vendor": vendor.pk,
                    "purchase_date": today,
                    "items": [{"product": chips.pk, "quantity": 40, "purchase_price": Decimal("1.05")}],
                },
                user=admin_user,
            )
            if not result.accepted:
                raise CommandError(f"Could not create demo purchase: {result.message}")
            receive_purchase(result.value.pk, user=admin_user)

        if not Invoice.objects.exists():
            result = record_sale(
                {
                    "customer": customer.pk,
                    "invoice_date": today,
                    "items": [
                        {"product": cola.pk, "quantity": 2, "unit_price": Decimal("1.50")},
                        {"product": chips.pk, "quantity": 1, "unit_price": Decimal("2.00")},
                    ],
                    "tax_rate": Decimal("14"),
                    "amount_paid": Decimal("2.00"),
                },
                user=admin_user,
            )
            if not result.accepted:
                raise CommandError(f"Could not create demo invoice: {result.message}")

        self.stdout.write(self.style.SUCCESS("Demo data seeded successfully."))
        self.stdout.write("Credentials: admin/admin1234, manager/manager1234, staff/staff1234")
