"""
Receipts / Invoices / Statements → Structured Extraction → Categorized Transactions

An AI-assisted import pipeline that turns uploaded financial documents into
normalized, categorized transaction records. LLM output is treated as an
untrusted extraction step underneath deterministic validation, and every
batch item is tracked through an explicit state machine.
"""

__version__ = "0.3.0"
