from setuptools import setup, find_packages

setup(
    name="csv-exportable",
    version="0.1.0",
    description="Mark schema fields exportable and stream query results to CSV",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    include_package_data=True,
    python_requires=">=3.9",
    install_requires=[
        "SQLAlchemy>=2.0",
        "pydantic>=2.0",
        "PyYAML>=6.0",
        "Jinja2>=3.0",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
)
