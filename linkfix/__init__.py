"""Refactoring engine turning a C linker backend into library form."""
