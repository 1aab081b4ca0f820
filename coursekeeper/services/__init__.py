"""Services implementing scanning, reconciliation and progress persistence."""
