"""Birdbath survey loader - clean raw birdbath survey exports into typed tables."""

__version__ = "0.1.0"

from birdbath_survey.models import SurveyTable as SurveyTable
from birdbath_survey.survey import load_survey as load_survey
