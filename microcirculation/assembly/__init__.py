"""Block assembly of the flow and hematocrit systems."""
