"""Servicio central de sincronización basada en secuencias."""
