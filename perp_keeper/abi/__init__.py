"""Instruction encoders and account lists for the ledger program."""
