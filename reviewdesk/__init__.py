"""Review and approval workflow engine for invoices, vouchers, notices and tasks."""

__version__ = "0.1.0"
