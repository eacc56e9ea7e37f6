"""cli/ - Typer 命令行工具"""
