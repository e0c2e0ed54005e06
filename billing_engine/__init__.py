"""Transaction attribution and invoice assembly backend."""
