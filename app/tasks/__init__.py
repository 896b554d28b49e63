from app.tasks.billing import mirror_invoice

__all__ = [
    "mirror_invoice",
]
