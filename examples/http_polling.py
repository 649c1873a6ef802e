"""Poll a handful of websites and serve their status.

    paramedic serve examples.http_polling:server --test-now
"""

from __future__ import annotations

import logging

from paramedic import LifecycleEvent, create_server
from paramedic.notifications import NotificationManager
from paramedic.probes import http_probe

logger = logging.getLogger(__name__)

server = create_server()


def register_ping(collection, site):
    collection.register_test(site["name"], http_probe(site["url"])).set_interval(site["interval"])


server.register_collection("Server Pings", register_ping).add({
    "name": "Python",
    "url": "https://www.python.org",
    "interval": 30_000,
}).add({
    "name": "PyPI",
    "url": "https://pypi.org",
    "interval": 30_000,
}).add({
    "name": "GitHub",
    "url": "https://github.com",
    "interval": 60_000,
}).add({
    "name": "localhost",
    "url": "http://localhost:80/",
    "interval": 30_000,
})


@server.on(LifecycleEvent.ERROR)
def report_down(error, test):
    logger.error('Hey, "%s" is down! (%s)', test.name, error)


NotificationManager().attach(server)
