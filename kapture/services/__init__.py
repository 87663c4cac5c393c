"""Service layer: persistence, reconciliation, retention and the download facade."""
