"""
Skymmich

An astrophotography gallery and cataloging service. Images are synchronized
from an Immich instance, plate solved through Astrometry.net, and served
with their celestial metadata through a JSON API and a live event channel.
"""

__version__ = "1.0.0"
__author__ = "Skymmich Team"
