"""
Kanwen Test Suite

Tests are organized into:
- unit/: Unit tests for individual components
- integration/: Scan loop tests across orchestrator, history and playback
"""
