"""ExpenseWatch - legislator expense ETL with risk scoring and rankings."""

__version__ = "0.1.0"
