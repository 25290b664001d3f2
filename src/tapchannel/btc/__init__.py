"""Bitcoin primitives: keys, scripts, addresses, transactions, PSBT, Taproot."""
