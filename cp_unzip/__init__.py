"""Extract ZIP archives whose entry names use a legacy codepage."""
