"""IPTp regimen x malaria burden birth-outcome analysis pipeline."""
