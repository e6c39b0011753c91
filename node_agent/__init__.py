"""Agente de nodo de campo: numeración, almacenamiento local y transporte."""
