"""Domain layer: envelopes, tally state, errors. No I/O."""
