"""Editor side: socket server, command dispatch, diff review and registry upkeep."""
