"""tradecue_ops - Operator CLI and concrete services for tradecue."""
