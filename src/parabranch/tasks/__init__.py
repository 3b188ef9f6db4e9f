"""Task models, classification and grouping."""
