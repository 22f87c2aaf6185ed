"""
Fee Kernel

Value objects, domain types, typed exceptions and structured logging for the
Console's fee reconciliation engines:
- Decimal-only monetary amounts keyed by free-form asset codes
- Explicit tagged inputs for the two transaction payload shapes
- Immutable fee calculation state and transaction display projections
"""

__version__ = "0.1.0"
