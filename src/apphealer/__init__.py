"""AppHealer - diagnosis, risk-graded healing and pattern learning for web applications."""

__version__ = "0.1.0"
