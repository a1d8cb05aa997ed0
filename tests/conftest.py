"""
Shared fixtures for the job market pipeline tests.
"""

from datetime import datetime, timezone

import pytest

from jobmarket.config import PipelineConfig
from jobmarket.models import JobRecord

FIXED_NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

BASE_DESCRIPTION = (
    "Acme is a data driven retailer based in Bavaria. As Data Scientist you build forecasting "
    "models for demand planning, design experiments for pricing, and translate business questions "
    "into analytical products. You work with Python, SQL and Apache Spark on a modern cloud stack "
    "and deploy models with Docker and Kubernetes. You present results to stakeholders in plain "
    "language and mentor colleagues in statistical methods. We value curiosity, rigor and clear "
    "communication. Your tasks include feature engineering on large transactional datasets, "
    "evaluation of machine learning models, monitoring of production pipelines, and close "
    "collaboration with data engineers on data quality. You bring a degree in mathematics, physics "
    "or computer science and several years of hands-on experience with statistical modelling. "
    "Experience with time series forecasting, causal inference and Bayesian methods is a plus. "
    "We offer flexible working hours, home office two days a week, a training budget and a "
    "company pension scheme. Our team is international and English is our working language."
)


@pytest.fixture
def fixed_now():
    """Anchor for relative dates."""
    return FIXED_NOW


@pytest.fixture
def acme_raw_records():
    """Two near-duplicate postings for the same job from different collectors."""
    record_a = {
        "title": "Data Scientist",
        "company": "Acme GmbH",
        "location": "München",
        "description": BASE_DESCRIPTION,
        "posted_date": "2024-01-10",
        "source": "stepstone",
    }
    record_b = {
        "job_title": "Data Scientist",
        "company_name": "Acme GmbH",
        "location": "Munich",
        "description": BASE_DESCRIPTION
        + " You will also own the experimentation platform roadmap. Relocation support is available.",
        "date_posted": "2024-01-20",
        "source": "indeed",
    }
    return [record_a, record_b]


def make_record(job_id, title="Data Scientist", company="Acme GmbH", location="München", **kwargs):
    """JobRecord with sensible defaults for unit tests."""
    values = dict(
        job_id=job_id,
        title=title,
        company=company,
        location=location,
        city=kwargs.pop("city", "München"),
        description=kwargs.pop("description", "Build forecasting models with Python and SQL."),
    )
    values.update(kwargs)
    return JobRecord(**values)


@pytest.fixture
def record_factory():
    return make_record


@pytest.fixture
def corpus_records():
    """Small corpus with three clearly separated job families."""
    texts = {
        "dev": (
            "Backend Developer",
            "Develop backend services in Python and Django, write SQL queries for PostgreSQL, "
            "deploy with Docker and Kubernetes, review code in GitLab.",
        ),
        "care": (
            "Pflegefachkraft",
            "Pflege von Patienten im Krankenhaus, Dokumentation der Pflege, Schichtdienst auf "
            "der Station, Betreuung von Angehörigen und Pflegeplanung.",
        ),
        "sales": (
            "Sales Representative",
            "Acquire new customers, negotiate contracts with retail partners, manage the sales "
            "pipeline in Salesforce, travel to customer meetings and trade fairs.",
        ),
    }
    records = []
    for family, (title, description) in texts.items():
        for i in range(4):
            records.append(JobRecord(
                job_id=f"{family}-{i}",
                title=f"{title} {i}",
                company=f"{family.title()} Corp {i}",
                description=f"{description} Variant {i} of the posting.",
                ingest_order=len(records),
            ))
    return records


@pytest.fixture
def small_config(tmp_path):
    """Configuration sized for tiny test corpora."""
    return PipelineConfig(
        k_min=2,
        k_max=4,
        n_init=3,
        term_clusters=8,
        workers=2,
        checkpoint_dir=str(tmp_path / "checkpoints"),
    )


# Labeled sample for tagging quality: job text plus the keywords a reviewer
# judged relevant for it.
LABELED_SAMPLE = [
    (
        "Python Developer",
        "Build REST API services with Python, Django and PostgreSQL. Deploy with Docker on AWS.",
        ["Python", "Django", "PostgreSQL", "Docker", "AWS", "REST API"],
    ),
    (
        "Frontend Engineer",
        "Develop web applications with TypeScript and Angular. Write HTML and CSS, test with Jenkins pipelines.",
        ["TypeScript", "Angular", "HTML", "CSS", "Jenkins"],
    ),
    (
        "Data Engineer",
        "Build batch pipelines with Apache Spark, Kafka and Airflow. Model data in Snowflake and dbt.",
        ["Apache Spark", "Kafka", "Airflow", "Snowflake", "dbt"],
    ),
    (
        "Softwareentwickler C++",
        "Entwicklung von Embedded Software in C++ unter Linux. Abgeschlossenes Studium der Informatik.",
        ["C++", "Linux", "abgeschlossenes Studium", "Studium der Informatik", "Informatik"],
    ),
    (
        ".NET Entwickler",
        "Entwicklung mit C# und .NET, Datenbanken mit SQL. Wir bieten Gleitzeit und ein Jobticket.",
        [".NET", "C#", "SQL", "Gleitzeit", "Jobticket"],
    ),
    (
        "Projektleiter IT",
        "Steuerung von IT-Projekten nach PRINCE2 und PMP Standards. Kommunikationsstärke und Belastbarkeit.",
        ["PRINCE2", "PMP", "Kommunikationsstärke", "Belastbarkeit"],
    ),
    (
        "Cloud Architect",
        "Design cloud landing zones on Azure with Terraform and Ansible. CKA or AWS Certified preferred.",
        ["Azure", "Terraform", "Ansible", "AWS", "CKA", "AWS Certified"],
    ),
    (
        "BI Analyst",
        "Create dashboards in Power BI and Tableau, analyze data with SQL and MS Excel. Bachelor in mathematics.",
        ["Power BI", "Tableau", "SQL", "MS Excel", "Bachelor", "mathematics"],
    ),
    (
        "Machine Learning Engineer",
        "Train models with PyTorch and TensorFlow, use Pandas and NumPy daily. PhD in physics welcome.",
        ["Machine Learning", "PyTorch", "TensorFlow", "Pandas", "NumPy", "PhD", "physics"],
    ),
    (
        "Werkstudent Marketing",
        "Unterstützung im Online Marketing mit Eigeninitiative und Kreativität. Flexible Arbeitszeiten und Home Office.",
        ["Eigeninitiative", "Kreativität", "flexible Arbeitszeiten", "home office"],
    ),
    (
        "Security Analyst",
        "Monitor security events, run audits based on ISTQB and CISSP practices. Attention to detail required.",
        ["ISTQB", "CISSP", "attention to detail"],
    ),
    (
        "Office Assistant",
        "Organize appointments and travel for the management board. Friendly and reliable manner.",
        [],
    ),
]


@pytest.fixture
def labeled_sample():
    """(records, labels) for the labeled tagging sample."""
    records = []
    labels = {}
    for i, (title, description, expected) in enumerate(LABELED_SAMPLE):
        job_id = f"labeled-{i}"
        records.append(JobRecord(job_id=job_id, title=title, description=description, ingest_order=i))
        labels[job_id] = expected
    return records, labels


FAMILY_TEXT = {
    "dev": (
        "Develop backend services in Python and Django, write SQL queries for PostgreSQL, "
        "deploy with Docker and Kubernetes and review code in GitLab."
    ),
    "care": (
        "Pflege von Patienten im Krankenhaus, Dokumentation der Pflege, Schichtdienst auf der "
        "Station, Betreuung von Angehörigen und Pflegeplanung. Wir bieten Jobticket und Weiterbildung."
    ),
    "sales": (
        "Acquire new customers, negotiate contracts with retail partners, manage the sales pipeline "
        "in the CRM, travel to customer meetings and trade fairs. Company car and bonus included."
    ),
}

RAW_CORPUS = [
    ("dev", "Backend Developer", "Nordlicht Software", "Berlin"),
    ("dev", "Python Engineer", "Datawerk", "Hamburg"),
    ("dev", "Platform Engineer", "Kubix", "München"),
    ("dev", "Software Developer", "Rheinbyte", "Köln"),
    ("care", "Pflegefachkraft", "Klinikum Süd", "Stuttgart"),
    ("care", "Gesundheits- und Krankenpfleger", "Pflegedienst Sonnenschein", "Leipzig"),
    ("care", "Altenpfleger", "Seniorenheim Lindenhof", "Dresden"),
    ("care", "Stationsleitung Pflege", "Uniklinik Nord", "Kiel"),
    ("sales", "Sales Representative", "Vertriebspartner Ost", "Potsdam"),
    ("sales", "Account Executive", "Handelshaus Weber", "Bremen"),
    ("sales", "Key Account Manager", "Getränke Müller", "Bonn"),
    ("sales", "Außendienstmitarbeiter", "Baustoffe Klein", "Essen"),
]


@pytest.fixture
def raw_corpus():
    """Twelve distinct raw postings from three job families."""
    return [
        {
            "title": title,
            "company": company,
            "location": location,
            "description": f"{FAMILY_TEXT[family]} Position: {title}.",
            "posted_date": f"2024-01-{i + 1:02d}",
            "source": "fixture",
        }
        for i, (family, title, company, location) in enumerate(RAW_CORPUS)
    ]
