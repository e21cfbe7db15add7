"""Sample document texts shared by the test modules."""

GUIDE = """# Guide
Intro text.

## Install
Run the installer.

## Usage
Call the tool.
"""

HANDBOOK = """# Handbook

## Vacation
Employees get thirty days of paid vacation per year.

## Travel
Book trains for trips under five hours.
"""
