"""
Signatures module.

Signatures are permanent. Validity is recomputed on every verification
(content hash, seal, signer, validity window) and never stored as truth.
"""
