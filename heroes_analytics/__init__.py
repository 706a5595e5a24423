"""Heroes Analytics - anonymized behavioral-interaction pipeline."""
