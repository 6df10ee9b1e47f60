"""Bill-item assignment resolution."""
from .assignment import ALL_SCHOOLS, assignment_text, resolve, resolve_bill_items

__all__ = ["ALL_SCHOOLS", "assignment_text", "resolve", "resolve_bill_items"]
