"""
DocLock Secure QR — document bundles exposed through a scannable QR code.
"""
