"""
DocLock Sharing — share grants, notifications and the friends circle.
"""
