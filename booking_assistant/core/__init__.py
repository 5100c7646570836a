"""Booking core: errors, resolvers, tool-call dispatch and sessions."""
