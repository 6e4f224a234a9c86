"""
Library ledger service.

Borrow/return with fines and refunds, purchases with full or installment
payment, and earnings reports over the resulting records.
"""
