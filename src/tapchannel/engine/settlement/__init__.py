"""Settlement: dual-signature finalization and the per-wallet settlement state machine."""
