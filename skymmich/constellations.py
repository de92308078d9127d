"""
Constellation lookup from equatorial coordinates.

Uses the IAU boundaries shipped with astropy (Roman 1987, B1875 frame).
"""

import math
from typing import Any, Dict, Optional

from astropy import units as u
from astropy.coordinates import SkyCoord

IAU_ABBREVIATIONS = {
    "Andromeda": "And", "Antlia": "Ant", "Apus": "Aps", "Aquarius": "Aqr", "Aquila": "Aql",
    "Ara": "Ara", "Aries": "Ari", "Auriga": "Aur", "Bootes": "Boo", "Caelum": "Cae",
    "Camelopardalis": "Cam", "Cancer": "Cnc", "Canes Venatici": "CVn", "Canis Major": "CMa",
    "Canis Minor": "CMi", "Capricornus": "Cap", "Carina": "Car", "Cassiopeia": "Cas",
    "Centaurus": "Cen", "Cepheus": "Cep", "Cetus": "Cet", "Chamaeleon": "Cha", "Circinus": "Cir",
    "Columba": "Col", "Coma Berenices": "Com", "Corona Australis": "CrA", "Corona Borealis": "CrB",
    "Corvus": "Crv", "Crater": "Crt", "Crux": "Cru", "Cygnus": "Cyg", "Delphinus": "Del",
    "Dorado": "Dor", "Draco": "Dra", "Equuleus": "Equ", "Eridanus": "Eri", "Fornax": "For",
    "Gemini": "Gem", "Grus": "Gru", "Hercules": "Her", "Horologium": "Hor", "Hydra": "Hya",
    "Hydrus": "Hyi", "Indus": "Ind", "Lacerta": "Lac", "Leo": "Leo", "Leo Minor": "LMi",
    "Lepus": "Lep", "Libra": "Lib", "Lupus": "Lup", "Lynx": "Lyn", "Lyra": "Lyr", "Mensa": "Men",
    "Microscopium": "Mic", "Monoceros": "Mon", "Musca": "Mus", "Norma": "Nor", "Octans": "Oct",
    "Ophiuchus": "Oph", "Orion": "Ori", "Pavo": "Pav", "Pegasus": "Peg", "Perseus": "Per",
    "Phoenix": "Phe", "Pictor": "Pic", "Pisces": "Psc", "Piscis Austrinus": "PsA", "Puppis": "Pup",
    "Pyxis": "Pyx", "Reticulum": "Ret", "Sagitta": "Sge", "Sagittarius": "Sgr", "Scorpius": "Sco",
    "Sculptor": "Scl", "Scutum": "Sct", "Serpens": "Ser", "Sextans": "Sex", "Taurus": "Tau",
    "Telescopium": "Tel", "Triangulum": "Tri", "Triangulum Australe": "TrA", "Tucana": "Tuc",
    "Ursa Major": "UMa", "Ursa Minor": "UMi", "Vela": "Vel", "Virgo": "Vir", "Volans": "Vol",
    "Vulpecula": "Vul",
}


def _valid(ra: Any, dec: Any) -> bool:
    try:
        ra, dec = float(ra), float(dec)
    except (TypeError, ValueError):
        return False
    return math.isfinite(ra) and math.isfinite(dec) and -90.0 <= dec <= 90.0


def constellation_for(ra: Any, dec: Any) -> Optional[str]:
    """IAU constellation containing the ICRS position (degrees), or None for invalid input."""
    if not _valid(ra, dec):
        return None
    coord = SkyCoord(ra=float(ra) % 360.0 * u.deg, dec=float(dec) * u.deg, frame="icrs")
    return str(coord.get_constellation())


def constellation_abbreviation(name: str) -> str:
    """Three-letter IAU abbreviation; unknown names fall back to their first three letters."""
    return IAU_ABBREVIATIONS.get(name, name[:3].upper())


def constellation_info(ra: Any, dec: Any) -> Optional[Dict[str, Any]]:
    name = constellation_for(ra, dec)
    if name is None:
        return None
    return {
        "name": name,
        "abbreviation": constellation_abbreviation(name),
        "ra": float(ra),
        "dec": float(dec),
    }
