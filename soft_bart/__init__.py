from .bart import SoftBART, DefaultSoftBART, ProbitSoftBART
from .DataGenerator import DataGenerator
from .moves import all_moves, Birth, Death, Sharpness, InvalidProposal, birth_prob, birth_prob_from_basis, \
    log_birth_trans, log_death_trans, draw_cut
from .params import Tree, BartState, SuffStats
from .priors import TreesPrior, SharpnessPrior, GlobalParamPrior, SoftBARTLikelihood, ComprehensivePrior, ProbitPrior
from .samplers import Sampler, DefaultSampler, ProbitSampler, all_samplers
from .util import DefaultPreprocessor, ClassificationPreprocessor, Dataset

import logging
logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = ["SoftBART", "DefaultSoftBART", "ProbitSoftBART",
           "Birth", "Death", "Sharpness", "InvalidProposal", "all_moves",
           "birth_prob", "birth_prob_from_basis", "log_birth_trans", "log_death_trans", "draw_cut",
           "TreesPrior", "SharpnessPrior", "GlobalParamPrior", "SoftBARTLikelihood",
           "ComprehensivePrior", "ProbitPrior",
           "DataGenerator", "Tree", "BartState", "SuffStats",
           "Sampler", "DefaultSampler", "ProbitSampler", "all_samplers",
           "DefaultPreprocessor", "ClassificationPreprocessor", "Dataset"]
