"""Invoice lifecycle state machine, records, and stores."""
