"""Job award coordination for a bidding marketplace."""
