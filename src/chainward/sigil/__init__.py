"""Sigil - signing capability (ECDSA/secp256k1 via eth-account)."""
