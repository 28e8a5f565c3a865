"""
Wallet package: balance, charging and the wallet ledger.
"""
