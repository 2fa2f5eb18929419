"""LeaseLogix authorization, membership and invitation core."""
