"""Process bootstrap: database, logging and pipeline wiring."""
