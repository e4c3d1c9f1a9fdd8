"""
Tax-year tables: federal and capital-gains brackets, deductions, Medicare
IRMAA tiers, NIIT thresholds, Social Security thresholds, state income tax
and the RMD Uniform Lifetime Table.

Tables are data keyed by tax year and filing status. Brackets are lists of
(threshold, rate) tuples where threshold is the START of each bracket.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from errors import InvalidInputError

logger = logging.getLogger(__name__)

FILING_STATUSES = ('single', 'married_joint', 'married_separate', 'head_of_household')

Brackets = List[Tuple[float, float]]
# (MAGI upper bound inclusive, Part B monthly surcharge, Part D monthly surcharge)
IrmaaTiers = List[Tuple[float, float, float]]


@dataclass
class TaxYearTables:
    """All policy constants for one tax year"""
    tax_year: int
    federal_brackets: Dict[str, Brackets]
    capital_gains_brackets: Dict[str, Brackets]
    standard_deduction: Dict[str, float]
    additional_deduction_married: float
    additional_deduction_unmarried: float
    irmaa_tiers: Dict[str, IrmaaTiers]
    niit_threshold: Dict[str, float]
    niit_rate: float = 0.038
    # (base amount, adjusted base amount) for provisional income
    social_security_thresholds: Dict[str, Tuple[float, float]] = field(default_factory=dict)
    state_taxes: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    qcd_limit: float = 105_000
    capital_loss_ordinary_limit: float = 3_000
    rmd_start_age: int = 73

    def for_status(self, table: Dict[str, Any], filing_status: str) -> Any:
        """Look up a per-status table, rejecting unsupported statuses"""
        if filing_status not in FILING_STATUSES:
            raise InvalidInputError(f"Unsupported filing status: {filing_status}")
        if filing_status in table:
            return table[filing_status]
        # Head of household shares the single schedule where no own schedule exists
        return table['single']


# IRS Uniform Lifetime Table (2022+)
UNIFORM_LIFETIME_TABLE = {
    73: 26.5, 74: 25.5, 75: 24.6, 76: 23.7, 77: 22.9, 78: 22.0, 79: 21.1,
    80: 20.2, 81: 19.4, 82: 18.5, 83: 17.7, 84: 16.8, 85: 16.0, 86: 15.2,
    87: 14.4, 88: 13.7, 89: 12.9, 90: 12.2, 91: 11.5, 92: 10.8, 93: 10.1,
    94: 9.5, 95: 8.9, 96: 8.4, 97: 7.8, 98: 7.3, 99: 6.8, 100: 6.4,
}

_SOCIAL_SECURITY_THRESHOLDS = {
    'single': (25_000, 34_000),
    'married_joint': (32_000, 44_000),
    'married_separate': (0, 0),
    'head_of_household': (25_000, 34_000),
}

_STATE_TAXES = {
    # No income tax
    'AK': {'type': 'none'},
    'FL': {'type': 'none'},
    'NV': {'type': 'none'},
    'NH': {'type': 'none'},
    'SD': {'type': 'none'},
    'TN': {'type': 'none'},
    'TX': {'type': 'none'},
    'WA': {'type': 'none'},
    'WY': {'type': 'none'},

    # Flat tax
    'AZ': {'type': 'flat', 'rate': 0.025},
    'CO': {'type': 'flat', 'rate': 0.044},
    'IL': {'type': 'flat', 'rate': 0.0495},
    'IN': {'type': 'flat', 'rate': 0.0315},
    'KY': {'type': 'flat', 'rate': 0.04},
    'MA': {'type': 'flat', 'rate': 0.05},
    'MI': {'type': 'flat', 'rate': 0.0425},
    'NC': {'type': 'flat', 'rate': 0.0475},
    'PA': {'type': 'flat', 'rate': 0.0307},
    'UT': {'type': 'flat', 'rate': 0.0485},

    # Progressive
    'CA': {
        'type': 'progressive',
        'brackets': {
            'single': [(0, 0.01), (10_412, 0.02), (24_684, 0.04), (38_959, 0.06),
                       (54_081, 0.08), (68_350, 0.093), (349_137, 0.103),
                       (418_961, 0.113), (698_271, 0.123), (1_000_000, 0.133)],
            'married_joint': [(0, 0.01), (20_824, 0.02), (49_368, 0.04), (77_918, 0.06),
                              (108_162, 0.08), (136_700, 0.093), (698_274, 0.103),
                              (837_922, 0.113), (1_396_542, 0.123), (2_000_000, 0.133)],
        },
    },
    'NY': {
        'type': 'progressive',
        'brackets': {
            'single': [(0, 0.04), (8_500, 0.045), (11_700, 0.0525), (13_900, 0.055),
                       (80_650, 0.06), (215_400, 0.0685), (1_077_550, 0.0965),
                       (5_000_000, 0.103), (25_000_000, 0.109)],
            'married_joint': [(0, 0.04), (17_150, 0.045), (23_600, 0.0525), (27_900, 0.055),
                              (161_550, 0.06), (323_200, 0.0685), (2_155_350, 0.0965),
                              (5_000_000, 0.103), (25_000_000, 0.109)],
        },
    },
}

_INF = float('inf')

TAX_TABLES: Dict[int, TaxYearTables] = {
    2024: TaxYearTables(
        tax_year=2024,
        federal_brackets={
            'single': [(0, 0.10), (11_600, 0.12), (47_150, 0.22), (100_525, 0.24),
                       (191_950, 0.32), (243_725, 0.35), (609_350, 0.37)],
            'married_joint': [(0, 0.10), (23_200, 0.12), (94_300, 0.22), (201_050, 0.24),
                              (383_900, 0.32), (487_450, 0.35), (731_200, 0.37)],
            'married_separate': [(0, 0.10), (11_600, 0.12), (47_150, 0.22), (100_525, 0.24),
                                 (191_950, 0.32), (243_725, 0.35), (365_600, 0.37)],
            'head_of_household': [(0, 0.10), (16_550, 0.12), (63_100, 0.22), (100_500, 0.24),
                                  (191_950, 0.32), (243_700, 0.35), (609_350, 0.37)],
        },
        capital_gains_brackets={
            'single': [(0, 0.0), (47_025, 0.15), (518_900, 0.20)],
            'married_joint': [(0, 0.0), (94_050, 0.15), (583_750, 0.20)],
            'married_separate': [(0, 0.0), (47_025, 0.15), (291_850, 0.20)],
            'head_of_household': [(0, 0.0), (63_000, 0.15), (551_350, 0.20)],
        },
        standard_deduction={
            'single': 14_600,
            'married_joint': 29_200,
            'married_separate': 14_600,
            'head_of_household': 21_900,
        },
        additional_deduction_married=1_550,
        additional_deduction_unmarried=1_950,
        irmaa_tiers={
            'single': [(103_000, 0.0, 0.0), (129_000, 69.90, 12.90), (161_000, 174.70, 33.30),
                       (193_000, 279.50, 53.80), (500_000, 384.30, 74.20), (_INF, 419.30, 81.00)],
            'married_joint': [(206_000, 0.0, 0.0), (258_000, 69.90, 12.90), (322_000, 174.70, 33.30),
                              (386_000, 279.50, 53.80), (750_000, 384.30, 74.20), (_INF, 419.30, 81.00)],
            'married_separate': [(103_000, 0.0, 0.0), (397_000, 384.30, 74.20), (_INF, 419.30, 81.00)],
        },
        niit_threshold={
            'single': 200_000,
            'married_joint': 250_000,
            'married_separate': 125_000,
            'head_of_household': 200_000,
        },
        social_security_thresholds=_SOCIAL_SECURITY_THRESHOLDS,
        state_taxes=_STATE_TAXES,
        qcd_limit=105_000,
    ),
    2025: TaxYearTables(
        tax_year=2025,
        federal_brackets={
            'single': [(0, 0.10), (11_925, 0.12), (48_475, 0.22), (103_350, 0.24),
                       (197_300, 0.32), (250_525, 0.35), (626_350, 0.37)],
            'married_joint': [(0, 0.10), (23_850, 0.12), (96_950, 0.22), (206_700, 0.24),
                              (394_600, 0.32), (501_050, 0.35), (751_600, 0.37)],
            'married_separate': [(0, 0.10), (11_925, 0.12), (48_475, 0.22), (103_350, 0.24),
                                 (197_300, 0.32), (250_525, 0.35), (375_800, 0.37)],
            'head_of_household': [(0, 0.10), (17_000, 0.12), (64_850, 0.22), (103_350, 0.24),
                                  (197_300, 0.32), (250_500, 0.35), (626_350, 0.37)],
        },
        capital_gains_brackets={
            'single': [(0, 0.0), (48_350, 0.15), (533_400, 0.20)],
            'married_joint': [(0, 0.0), (96_700, 0.15), (600_050, 0.20)],
            'married_separate': [(0, 0.0), (48_350, 0.15), (300_000, 0.20)],
            'head_of_household': [(0, 0.0), (64_750, 0.15), (566_700, 0.20)],
        },
        standard_deduction={
            'single': 15_000,
            'married_joint': 30_000,
            'married_separate': 15_000,
            'head_of_household': 22_500,
        },
        additional_deduction_married=1_600,
        additional_deduction_unmarried=2_000,
        irmaa_tiers={
            'single': [(106_000, 0.0, 0.0), (133_000, 74.00, 13.70), (167_000, 185.00, 35.30),
                       (200_000, 295.90, 57.00), (500_000, 406.90, 78.60), (_INF, 443.90, 85.80)],
            'married_joint': [(212_000, 0.0, 0.0), (266_000, 74.00, 13.70), (334_000, 185.00, 35.30),
                              (400_000, 295.90, 57.00), (750_000, 406.90, 78.60), (_INF, 443.90, 85.80)],
            'married_separate': [(106_000, 0.0, 0.0), (394_000, 406.90, 78.60), (_INF, 443.90, 85.80)],
        },
        niit_threshold={
            'single': 200_000,
            'married_joint': 250_000,
            'married_separate': 125_000,
            'head_of_household': 200_000,
        },
        social_security_thresholds=_SOCIAL_SECURITY_THRESHOLDS,
        state_taxes=_STATE_TAXES,
        qcd_limit=108_000,
    ),
}


def get_tax_tables(tax_year: int) -> TaxYearTables:
    """Get tables for a tax year, falling back to the closest earlier year"""
    if tax_year in TAX_TABLES:
        return TAX_TABLES[tax_year]

    earlier = [year for year in TAX_TABLES if year < tax_year]
    if earlier:
        fallback = max(earlier)
    else:
        fallback = min(TAX_TABLES)
    logger.warning(f"No tax tables for {tax_year}, using {fallback}")
    return TAX_TABLES[fallback]


def get_state_tax_rates(state: str, filing_status: str,
                        tables: Optional[TaxYearTables] = None) -> Optional[Dict[str, Any]]:
    """Get the state income tax definition, or None for an unknown state"""
    tables = tables or get_tax_tables(max(TAX_TABLES))
    entry = tables.state_taxes.get(state.upper()) if state else None
    if entry is None:
        return None
    if entry['type'] != 'progressive':
        return entry
    brackets = entry['brackets'].get(filing_status, entry['brackets']['single'])
    return {'type': 'progressive', 'brackets': brackets}


def _brackets(raw: Dict[str, List[List[float]]]) -> Dict[str, Brackets]:
    return {status: [(float(t), float(r)) for t, r in rows] for status, rows in raw.items()}


def _irmaa(raw: Dict[str, List[List[Optional[float]]]]) -> Dict[str, IrmaaTiers]:
    # null upper bound marks the open top tier
    return {
        status: [(_INF if upper is None else float(upper), float(b), float(d)) for upper, b, d in rows]
        for status, rows in raw.items()
    }


def tables_from_dict(data: Dict[str, Any]) -> TaxYearTables:
    """Build TaxYearTables from a JSON-style dictionary"""
    try:
        state_taxes = {}
        for code, entry in data.get('state_taxes', _STATE_TAXES).items():
            entry = dict(entry)
            if entry.get('type') == 'progressive':
                entry['brackets'] = _brackets(entry['brackets'])
            state_taxes[code.upper()] = entry
        return TaxYearTables(
            tax_year=int(data['tax_year']),
            federal_brackets=_brackets(data['federal_brackets']),
            capital_gains_brackets=_brackets(data['capital_gains_brackets']),
            standard_deduction={k: float(v) for k, v in data['standard_deduction'].items()},
            additional_deduction_married=float(data['additional_deduction_married']),
            additional_deduction_unmarried=float(data['additional_deduction_unmarried']),
            irmaa_tiers=_irmaa(data['irmaa_tiers']),
            niit_threshold={k: float(v) for k, v in data['niit_threshold'].items()},
            niit_rate=float(data.get('niit_rate', 0.038)),
            social_security_thresholds={
                k: (float(v[0]), float(v[1]))
                for k, v in data.get('social_security_thresholds', _SOCIAL_SECURITY_THRESHOLDS).items()
            },
            state_taxes=state_taxes,
            qcd_limit=float(data.get('qcd_limit', 105_000)),
            capital_loss_ordinary_limit=float(data.get('capital_loss_ordinary_limit', 3_000)),
            rmd_start_age=int(data.get('rmd_start_age', 73)),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise InvalidInputError(f"Invalid tax table definition: {e}") from e


def load_tax_tables_json(filepath: str) -> TaxYearTables:
    """
    Load a tax year's tables from JSON and register them in TAX_TABLES.

    Args:
        filepath: Path to JSON file with the TaxYearTables fields

    Returns:
        The registered TaxYearTables
    """
    with open(filepath, 'r') as f:
        data = json.load(f)

    tables = tables_from_dict(data)
    if tables.tax_year in TAX_TABLES:
        logger.info(f"Replacing tax tables for {tables.tax_year} from {filepath}")
    TAX_TABLES[tables.tax_year] = tables
    return tables
