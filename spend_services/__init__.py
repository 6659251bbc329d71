"""Transaction-owning services that compose engines with the store."""
