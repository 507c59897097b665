"""Account storage, audit trail and authentication services."""
