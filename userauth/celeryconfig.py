"""
Celery configuration module.

See `the celery docs
<http://docs.celeryproject.org/en/latest/userguide/configuration.html>`_.
The broker and result backend are overridden by the Flask configuration when
the application is created.
"""

import os

REDIS_ENDPOINT = '%s:%s' % (os.environ.get('REDIS_HOST', 'localhost'),
                            os.environ.get('REDIS_PORT', '6379'))
broker_url = "redis://%s/1" % REDIS_ENDPOINT
result_backend = "redis://%s/1" % REDIS_ENDPOINT
task_ignore_result = True
worker_prefetch_multiplier = 1
task_acks_late = True
