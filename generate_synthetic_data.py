import argparse
import random
from pathlib import Path

import pandas as pd

# Project paths
PROJECT_ROOT = Path(__file__).resolve().parent
DATA_RAW = PROJECT_ROOT / "data" / "raw"

TECH_CODES = [97153, 97154]
BCBA_CODES = [97151, 97155, 97156]
CODE_RATES = {97153: 60.0, 97154: 45.0, 97151: 120.0, 97155: 110.0, 97156: 100.0}

# (billing spelling, payroll spelling, role); payroll spellings come from the
# default name mapping where they differ.
EMPLOYEES = [
    ("Francis, Keearia", "Francis, Keeaira", "TECH"),
    ("Labrado, Maritza Gallegos", "Gallegos Labrado, Maritza", "TECH"),
    ("Wilcox, BreAnn", "Wilcox, Breann R", "TECH"),
    ("Clegg, Charmisha", "Clegg, Charmisha M", "TECH"),
    ("Hammoud, Ricky", "Hammound, Tarek", "BCBA"),
    ("Nguyen, Alicia", "Nguyen, Alicia", "TECH"),
    ("Okafor, Daniel", "Okafor, Daniel", "TECH"),
    ("Reyes, Marisol", "Reyes, Marisol", "BCBA"),
]
HR_EMPLOYEE = "Seifeddine, Malak"


def _accounting(value: float) -> str:
    """Negative amounts the way payroll exports print them: (1,234.56)."""
    if value < 0:
        return f"({abs(value):,.2f})"
    return f"{value:,.2f}"


def generate_synthetic_data(
    output_dir: Path = DATA_RAW,
    sessions_per_employee: int = 40,
    seed: int = 7,
    billing_filename: str = "billing_synthetic.csv",
    payroll_filename: str = "payroll_synthetic.csv",
) -> tuple:
    """
    Generate a billing export and a payroll export for the Q2 2025 windows.

    - Sessions between 2025-03-31 and 2025-06-27 plus a few out of window
    - Biweekly checks from 2025-04-18, with a void check and a reversal
    - Payroll spellings that need the exact mapping table
    - One HR employee who appears in payroll only
    """
    rng = random.Random(seed)
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    print("Starting synthetic billing/payroll generation...")

    session_days = pd.bdate_range("2025-03-31", "2025-06-27")
    check_days = pd.date_range("2025-04-18", "2025-07-11", freq="14D")

    billing_rows = []
    payroll_rows = []
    check_no = 10001

    for billing_name, payroll_name, role in EMPLOYEES:
        codes = TECH_CODES if role == "TECH" else BCBA_CODES
        billed_hours = 0.0

        for _ in range(sessions_per_employee):
            code = rng.choice(codes)
            hours = rng.choice([1.0, 1.5, 2.0, 2.5, 3.0])
            day = rng.choice(session_days)
            rate = CODE_RATES[code]
            billed_hours += hours
            billing_rows.append(
                {
                    "Tech Name": billing_name,
                    "Code": code,
                    "Session Date": f"{day.month}/{day.day}/{day.year}",
                    "Hours": hours,
                    "Rate": rate,
                    "Price": round(hours * rate, 2),
                    "Client Name": f"Client {rng.randint(1, 25):02d}",
                    "Location": rng.choice(["Home", "Clinic", "School"]),
                }
            )

        # Out-of-window session: filtered before aggregation
        billing_rows.append(
            {
                "Tech Name": billing_name,
                "Code": codes[0],
                "Session Date": "3/28/2025",
                "Hours": 2.0,
                "Rate": CODE_RATES[codes[0]],
                "Price": round(2.0 * CODE_RATES[codes[0]], 2),
                "Client Name": "Client 01",
                "Location": "Clinic",
            }
        )

        pay_rate = 19.0 if role == "TECH" else 45.0
        per_check_hours = billed_hours / len(check_days) * rng.uniform(1.02, 1.25)
        for check in check_days:
            hours = round(per_check_hours, 2)
            gross = round(hours * pay_rate, 2)
            tax = round(gross * 0.12, 2)
            deductions = round(gross * 0.03, 2)
            payroll_rows.append(
                {
                    "Name": payroll_name,
                    "Check Date": f"{check.month}/{check.day}/{check.year}",
                    "Hours": hours,
                    "Total Paid": gross,
                    "Tax Withheld": tax,
                    "Deductions": deductions,
                    "Net Pay": round(gross - tax - deductions, 2),
                    "Employer Liability": round(gross * 0.0765, 2),
                    "Total Expenses": _accounting(round(gross * 1.0765, 2)),
                    "Department": "Clinical",
                    "Pay Frequency": "Biweekly",
                    "Payment Details/Check No": str(check_no),
                }
            )
            check_no += 1

    for check in check_days:
        gross = 80 * 24.0
        payroll_rows.append(
            {
                "Name": HR_EMPLOYEE,
                "Check Date": f"{check.month}/{check.day}/{check.year}",
                "Hours": 80.0,
                "Total Paid": gross,
                "Tax Withheld": round(gross * 0.12, 2),
                "Deductions": 0.0,
                "Net Pay": round(gross * 0.88, 2),
                "Employer Liability": round(gross * 0.0765, 2),
                "Total Expenses": _accounting(round(gross * 1.0765, 2)),
                "Department": "Human Resources",
                "Pay Frequency": "Biweekly",
                "Payment Details/Check No": str(check_no),
            }
        )
        check_no += 1

    # A voided check and its reversal
    voided = dict(payroll_rows[0])
    voided["Payment Details/Check No"] = f"VOID {check_no}"
    payroll_rows.append(voided)
    reversal = dict(voided)
    reversal["Hours"] = 0.0
    reversal["Total Paid"] = 0.0
    reversal["Tax Withheld"] = 0.0
    reversal["Deductions"] = 0.0
    reversal["Net Pay"] = 0.0
    reversal["Employer Liability"] = 0.0
    reversal["Total Expenses"] = _accounting(-150.0)
    reversal["Payment Details/Check No"] = "Adjustment"
    payroll_rows.append(reversal)

    billing_df = pd.DataFrame(billing_rows)
    payroll_df = pd.DataFrame(payroll_rows)

    billing_path = output_dir / billing_filename
    payroll_path = output_dir / payroll_filename
    billing_df.to_csv(billing_path, index=False)
    payroll_df.to_csv(payroll_path, index=False)

    print(f"Generated billing file: {billing_path}  ({len(billing_df)} rows)")
    print(f"Generated payroll file: {payroll_path}  ({len(payroll_df)} rows)")
    return billing_path, payroll_path


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Write synthetic billing and payroll exports.")
    parser.add_argument("--output-dir", default=str(DATA_RAW), help="Where to write the CSV files.")
    parser.add_argument("--sessions", type=int, default=40, help="Billing sessions per employee.")
    parser.add_argument("--seed", type=int, default=7, help="Random seed.")
    return parser.parse_args()


if __name__ == "__main__":
    args = parse_args()
    generate_synthetic_data(Path(args.output_dir), args.sessions, args.seed)
