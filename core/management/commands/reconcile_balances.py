from django.core.management.base import BaseCommand

from sales.services import reconcile_outstanding_balances


class Command(BaseCommand):
    help = "Compare cached customer outstanding balances with their open invoices."

    def add_arguments(self, parser):
        parser.add_argument(
            "--fix",
            action="store_true",
            help="Rewrite drifted balances with the computed value.",
        )

    def handle(self, *args, **options):
        fix = options["fix"]
        drifted = reconcile_outstanding_balances(fix=fix)

        if not drifted:
            self.stdout.write(self.style.SUCCESS("All customer balances match their invoices."))
            return

        self.stdout.write(self.style.WARNING(f"Found {len(drifted)} customer(s) with a drifted balance."))
        for row in drifted:
            self.stdout.write(f"- {row['name']} ({row['customer_id']}): cached {row['cached']}, computed {row['computed']}")

        if fix:
            self.stdout.write(self.style.SUCCESS(f"Rewrote {len(drifted)} balance(s)."))
        else:
            self.stdout.write(self.style.WARNING("Dry run only. Re-run with --fix to rewrite them."))
