"""Local heuristics, the AI analyst client and the classifier pipeline."""
