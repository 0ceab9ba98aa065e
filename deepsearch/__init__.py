"""Budget-bounded web research agent."""
