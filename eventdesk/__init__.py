"""EventDesk: event registrations with capacity and waitlist management."""
