"""Token-paid room booking: conversation FSM, conflict checks and settlement."""
