"""
DocLock Cards — debit/credit cards with encrypted number, expiry and CVV.
"""
