from setuptools import setup


setup(
    name="sheet-aggregator",
    version="0.1.0",
    description="Count mapped search terms across spreadsheet sheets and write reviewed totals back as reports",
    packages=["sheet_aggregator"],
    install_requires=[
        "pandas",
        "chardet",
        "openpyxl",
        "streamlit",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "sheet-aggregator=sheet_aggregator.cli:main",
        ]
    },
)
