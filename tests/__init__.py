"""
Ansiblematic test suite.

Everything runs unprivileged against FakeHost (see conftest.py); file work
happens under pytest's tmp_path.
"""
