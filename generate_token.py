"""
Helper script for generating an access token.

Be sure that you are using the same secret when running this script as when you
run the app. Set ``ACCESS_TOKEN_SECRET=somesecret`` in your environment to
ensure that the same secret is always used.


.. code-block:: bash

   $ ACCESS_TOKEN_SECRET=foosecret python generate_token.py
   User ID: 0b6a6a4e-3f0a-4f5e-9a51-2c9d0f0b8d1e
   Email address: joe@bloggs.com
   Username: jbloggs1
   Role [customer]:

   eyJhbGciOiJIUzI1NiIsInR5cCI6IkpXVCJ9...


Start the dev server with:

.. code-block:: bash

   $ ACCESS_TOKEN_SECRET=foosecret FLASK_APP=userauth.wsgi:application \
       REDIS_FAKE=1 CREATE_DB=1 flask run


Use the token in your requests to authenticated endpoints. Set the header
``Authorization: Bearer [token]``. The user must exist in the database for
``/users/profile`` to accept it.
"""

import click

from userauth import domain
from userauth.factory import create_web_app
from userauth.services import sessions


@click.command()
@click.option('--user_id', prompt='User ID')
@click.option('--email', prompt='Email address')
@click.option('--username', prompt='Username')
@click.option('--role', prompt='Role', default=domain.Roles.DEFAULT,
              type=click.Choice(domain.Roles.ALL))
def generate_token(user_id: str, email: str, username: str,
                   role: str = domain.Roles.DEFAULT) -> None:
    """Generate an access token for dev/testing purposes."""
    user = domain.User(user_id=user_id, username=username, email=email,
                       role=role, verified=True)
    with create_web_app().app_context():
        token = sessions.generate_access_token(user)
    click.echo(token)


if __name__ == '__main__':
    generate_token()
