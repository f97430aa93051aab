"""CompareLabs: one prompt, many models, metered by credits."""
