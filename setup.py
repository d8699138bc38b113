"""Install the user accounts service."""

from setuptools import setup, find_packages

setup(
    name='userauth',
    version='0.3.0',
    packages=find_packages(exclude=['*test*']),
    py_modules=['generate_token'],
    install_requires=[
        "flask",
        "werkzeug",
        "flask-sqlalchemy",
        "sqlalchemy",
        "redis",
        "fakeredis",
        "pyjwt",
        "bcrypt",
        "wtforms",
        "email-validator",
        "retry",
        "celery",
        "pytz",
        "python-dateutil",
        "python-json-logger",
        "click"
    ],
    extras_require={
        'test': [
            "pytest",
            "hypothesis",
            "mimesis"
        ]
    },
    zip_safe=False
)
