"""Pure calculation engines: no I/O, no clock, no database."""
