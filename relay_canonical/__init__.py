"""
PM Relay Canonical
==================

Byte-exact encodings shared by the relay and anyone auditing it:

- bcs:          Binary Canonical Serialization primitives
- quotes:       Enclave quote parsing and signed-bytes recomputation
- transactions: Programmable transaction building / TransactionData decoding
- sui:          Ledger signature, address and digest helpers
- nitro:        AWS Nitro attestation verification

Nothing in this package performs network I/O.
"""
