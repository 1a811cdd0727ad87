"""aido: a policy-governed tool-calling assistant for the shell."""
