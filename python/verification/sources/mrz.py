"""
Machine readable zone parsing for TD3 (passport) documents, ICAO 9303.

Line 2 layout:
    [0:9]   document number     [9]  check digit
    [10:13] nationality
    [13:19] birth date YYMMDD   [19] check digit
    [20]    sex
    [21:27] expiry YYMMDD       [27] check digit
    [28:42] personal number     [42] check digit
    [43]    composite check over [0:10] + [13:20] + [21:43]
"""

import re
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, Optional

TD3_LINE_LENGTH = 44
CHECK_WEIGHTS = (7, 3, 1)

_MRZ_CHARS = re.compile(r'^[A-Z0-9<]+$')


class MrzFormatError(ValueError):
    """MRZ lines are missing, the wrong length or contain invalid characters"""
    pass


def char_value(char: str) -> int:
    """Numeric value of an MRZ character: digits as-is, A-Z 10-35, filler 0"""
    if char.isdigit():
        return int(char)
    if 'A' <= char <= 'Z':
        return ord(char) - ord('A') + 10
    if char == '<':
        return 0
    raise MrzFormatError(f"Invalid MRZ character: {char!r}")


def check_digit(value: str) -> int:
    """ICAO 9303 check digit of a field"""
    total = sum(char_value(char) * CHECK_WEIGHTS[i % 3] for i, char in enumerate(value))
    return total % 10


def _digit_matches(value: str, digit: str) -> bool:
    # an empty optional field may carry a filler check digit
    if digit == '<':
        return check_digit(value) == 0
    return digit.isdigit() and check_digit(value) == int(digit)


def mrz_date(value: str, expiry: bool, today: Optional[date] = None) -> Optional[date]:
    """Convert YYMMDD to a date.

    Expiry dates are always in the 2000s; birth dates later than today's
    two-digit year belong to the previous century.
    """
    if not re.match(r'^\d{6}$', value):
        return None
    yy, month, day = int(value[0:2]), int(value[2:4]), int(value[4:6])
    today = today or date.today()
    if expiry or yy <= today.year % 100:
        year = 2000 + yy
    else:
        year = 1900 + yy
    try:
        return date(year, month, day)
    except ValueError:
        return None


@dataclass
class MrzData:
    """Fields and check digit outcomes of a TD3 MRZ"""
    document_type: str
    issuing_state: str
    surname: str
    given_names: str
    document_number: str
    nationality: str
    birth_date: str
    sex: str
    expiry_date: str
    personal_number: str
    checks: Dict[str, bool] = field(default_factory=dict)

    @property
    def checksums_valid(self) -> bool:
        return all(self.checks.values())

    def expiry(self) -> Optional[date]:
        return mrz_date(self.expiry_date, expiry=True)


def parse_td3(line1: str, line2: str) -> MrzData:
    """Parse and check a two-line TD3 MRZ.

    Raises:
        MrzFormatError: If either line is malformed
    """
    line1 = (line1 or '').strip().upper()
    line2 = (line2 or '').strip().upper()
    for number, line in ((1, line1), (2, line2)):
        if len(line) != TD3_LINE_LENGTH:
            raise MrzFormatError(f"MRZ line {number} must be {TD3_LINE_LENGTH} characters, got {len(line)}")
        if not _MRZ_CHARS.match(line):
            raise MrzFormatError(f"MRZ line {number} contains invalid characters")
    if not line1.startswith('P'):
        raise MrzFormatError("Not a passport MRZ")

    names = line1[5:].split('<<', 1)
    surname = names[0].replace('<', ' ').strip()
    given_names = names[1].replace('<', ' ').strip() if len(names) > 1 else ''

    composite = line2[0:10] + line2[13:20] + line2[21:43]
    checks = {
        'document_number': _digit_matches(line2[0:9], line2[9]),
        'birth_date': _digit_matches(line2[13:19], line2[19]),
        'expiry_date': _digit_matches(line2[21:27], line2[27]),
        'personal_number': _digit_matches(line2[28:42], line2[42]),
        'composite': _digit_matches(composite, line2[43]),
    }

    return MrzData(
        document_type=line1[0:2].replace('<', ''),
        issuing_state=line1[2:5].replace('<', ''),
        surname=surname,
        given_names=given_names,
        document_number=line2[0:9].replace('<', ''),
        nationality=line2[10:13].replace('<', ''),
        birth_date=line2[13:19],
        sex=line2[20],
        expiry_date=line2[21:27],
        personal_number=line2[28:42].replace('<', ''),
        checks=checks,
    )
