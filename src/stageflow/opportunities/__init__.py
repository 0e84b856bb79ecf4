"""Opportunity aggregate, typed field catalogue and the storage port."""
