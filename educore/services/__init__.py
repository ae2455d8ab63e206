"""Service layer: credit ledger, class registry, vouchers and support tickets."""
