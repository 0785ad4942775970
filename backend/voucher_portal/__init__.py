"""Top-level package for the assistive-technology voucher program backend.

It holds the database models, Pydantic schemas, the service layer for
applications, proofs, vouchers, invoices and notifications, the inbound
mailboxes, Dramatiq jobs and the FastAPI routers for the constituent,
vendor, evaluator and admin portals.

To run the API locally you can execute:

```bash
uvicorn voucher_portal.api.main:app --reload
```

The default configuration uses a local SQLite database.  Override any value
with environment variables or a ``.env`` file at the project root.
"""

__all__: list[str] = []
