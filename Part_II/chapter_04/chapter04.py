import numbers
import time
import warnings
from dataclasses import dataclass

import numpy as np
import pandas as pd
import torch
import pyro
import pyro.distributions as dist

from scipy import stats


PRIOR_SITES = ("partner_gender", "stressed")

# (partner_gender, stressed) -> dominance
DOMINANCE_TABLE = {
    (True, True): 7,
    (True, False): 5,
    (False, True): 6,
    (False, False): 4,
}
# same table indexed as [partner_gender][stressed]
DOMINANCE_TENSOR = torch.tensor([[DOMINANCE_TABLE[(False, False)], DOMINANCE_TABLE[(False, True)]],
                                 [DOMINANCE_TABLE[(True, False)], DOMINANCE_TABLE[(True, True)]]])

QUERY_SUPPORT = {
    "partner_gender": (True, False),
    "stressed": (True, False),
    "dominance": tuple(sorted(set(DOMINANCE_TABLE.values()))),
}

DOMINANCE_THRESHOLD = 5
DEFAULT_BATCH_SIZE = 1024


class InvalidConfiguration(Exception):
    pass


class InsufficientSamples(UserWarning):
    """
    Draw budget ran out before the requested number of accepted samples was
    collected. Issued as a warning by default, raised in strict mode; the
    partial posterior is attached either way.
    """
    def __init__(self, message, posterior=None):
        super().__init__(message)
        self.posterior = posterior


@dataclass(frozen=True)
class PriorConfig:
    """Bernoulli marginals for the two inputs of the dominance model"""
    partner_gender: float = 0.5
    stressed: float = 0.3

    def __post_init__(self):
        for site in PRIOR_SITES:
            value = getattr(self, site)
            if isinstance(value, bool) or not isinstance(value, numbers.Real) or not 0.0 <= value <= 1.0:
                raise InvalidConfiguration("prior probability for '%s' must lie in [0, 1], got %r"%(site, value))

    def distributions(self):
        return {site: dist.Bernoulli(torch.tensor(float(getattr(self, site)))) for site in PRIOR_SITES}


DEFAULT_PRIOR = PriorConfig()


@dataclass(frozen=True)
class InteractionSample:
    partner_gender: bool
    stressed: bool
    dominance: int

    @classmethod
    def from_inputs(cls, partner_gender, stressed):
        partner_gender, stressed = bool(partner_gender), bool(stressed)
        return cls(partner_gender, stressed, base.lookup(partner_gender, stressed))


class Posterior(object):
    """
    Empirical posterior built from accepted samples.

    counts: histogram over the support of the query site, example for
            'partner_gender': {True: 77, False: 23}
    target: number of accepted samples requested
    draws:  number of prior draws consumed to build the histogram
    """
    def __init__(self, query="partner_gender", target=0):
        self.query = query
        self.target = target
        self.counts = {value: 0 for value in QUERY_SUPPORT[query]}
        self.draws = 0

    @property
    def accepted(self):
        return sum(self.counts.values())

    @property
    def target_reached(self):
        return self.accepted >= self.target

    @property
    def acceptance_rate(self):
        return self.accepted/self.draws if self.draws else 0.0

    def probabilities(self):
        total = self.accepted
        if not total:
            return {}
        return {value: count/total for value, count in self.counts.items()}

    def merge(self, other):
        if other.query != self.query:
            raise InvalidConfiguration("cannot merge posteriors over '%s' and '%s'"%(self.query, other.query))
        merged = Posterior(self.query, self.target + other.target)
        merged.counts = {value: self.counts[value] + other.counts[value] for value in self.counts}
        merged.draws = self.draws + other.draws
        return merged

    def __repr__(self):
        return "Posterior(query=%r, counts=%r, draws=%s, target=%s, target_reached=%s)"%(
            self.query, self.counts, self.draws, self.target, self.target_reached)


class base(object):
    def __init__(self):
        pass

    @staticmethod
    def init_priors(prior_dict=None):
        """
        Input
        -------
        prior_dict: dictionary of Bernoulli probabilities keyed by site name, with an
                    optional 'default' used for every site not given explicitly,
                    example: {"partner_gender": 0.5, "default": 0.3}

        Output
        --------
        PriorConfig for the dominance model, sites missing from prior_dict keep
        their module defaults (0.5, 0.3).
        """
        prior_dict = dict(prior_dict) if prior_dict else {}
        unknown = set(prior_dict) - set(PRIOR_SITES) - {"default"}
        if unknown:
            raise InvalidConfiguration("unknown prior keys %s, expected any of %s or 'default'"%(sorted(unknown), list(PRIOR_SITES)))
        values = {}
        for site in PRIOR_SITES:
            value = prior_dict.get(site, prior_dict.get("default"))
            if value is not None:
                values[site] = value
        return PriorConfig(**values)

    @staticmethod
    def make_rng(seed=0):
        return torch.Generator().manual_seed(int(seed))

    @staticmethod
    def lookup(partner_gender, stressed):
        return DOMINANCE_TABLE[(bool(partner_gender), bool(stressed))]

    @staticmethod
    def lookup_tensor(partner_gender, stressed):
        """Element-wise lookup for boolean tensors of matching shape."""
        return DOMINANCE_TENSOR[partner_gender.long(), stressed.long()]

    @staticmethod
    def generate_batch(prior, rng, num_samples):
        """
        Input
        -------
        prior: PriorConfig holding the Bernoulli probabilities of both inputs
        rng: torch.Generator owned by the caller, the only entropy source used
        num_samples: number of independent interactions to draw

        Output
        --------
        Dictionary of tensors shaped (num_samples,): boolean 'partner_gender' & 'stressed'
        and integer 'dominance' computed from the lookup table.
        """
        # one (partner_gender, stressed) pair per row, drawn in row order like repeated single draws
        probs = torch.tensor([float(prior.partner_gender), float(prior.stressed)]).expand(num_samples, 2).contiguous()
        partner_gender, stressed = torch.bernoulli(probs, generator=rng).bool().unbind(dim=1)
        return {"partner_gender": partner_gender, "stressed": stressed,
                "dominance": base.lookup_tensor(partner_gender, stressed)}

    @staticmethod
    def generate(prior, rng):
        batch = base.generate_batch(prior, rng, 1)
        return InteractionSample.from_inputs(batch["partner_gender"].item(), batch["stressed"].item())

    @staticmethod
    def DominanceModel(prior=DEFAULT_PRIOR):
        """
        Pyro version of the generative story: {
                partner_gender ~ bernoulli(0.5);
                stressed       ~ bernoulli(0.3);
                dominance      = table[partner_gender, stressed];}

        Uses Pyro's global random state, so seed with pyro.set_rng_seed before tracing.
        """
        priors = prior.distributions()
        partner_gender = pyro.sample("partner_gender", priors["partner_gender"])
        stressed = pyro.sample("stressed", priors["stressed"])
        dominance = base.lookup_tensor(partner_gender.bool(), stressed.bool())
        return pyro.deterministic("dominance", dominance.to(torch.get_default_dtype()))

    @staticmethod
    def trace_sample(trace):
        values = {site: trace.nodes[site]["value"].item() for site in PRIOR_SITES}
        return InteractionSample.from_inputs(values["partner_gender"], values["stressed"])

    @staticmethod
    def vectorised(constraint):
        """Marks a constraint as accepting the batch dictionary from generate_batch."""
        constraint.vectorised = True
        return constraint

    @staticmethod
    def dominance_at_least(threshold=DOMINANCE_THRESHOLD):
        def constraint(sample):
            if isinstance(sample, InteractionSample):
                return sample.dominance >= threshold
            return sample["dominance"] >= threshold
        return base.vectorised(constraint)

    @staticmethod
    def accept_mask(constraint, batch):
        if getattr(constraint, "vectorised", False):
            return torch.as_tensor(constraint(batch), dtype=torch.bool)
        samples = map(InteractionSample.from_inputs, batch["partner_gender"].tolist(), batch["stressed"].tolist())
        return torch.tensor([bool(constraint(sample)) for sample in samples], dtype=torch.bool)

    @staticmethod
    def check_count(name, value, minimum=0):
        if isinstance(value, bool) or not isinstance(value, numbers.Integral) or value < minimum:
            raise InvalidConfiguration("'%s' must be an integer >= %s, got %r"%(name, minimum, value))

    @staticmethod
    def infer(prior, constraint, target_accepted_count, max_draws, rng, query="partner_gender",
              batch_size=DEFAULT_BATCH_SIZE, strict=False, print_logs=0):
        """
        Input
        -------
        prior: PriorConfig to draw interactions from
        constraint: predicate over InteractionSample, or a vectorised predicate over the
                    batch dictionary (see base.vectorised), example: base.dominance_at_least(5)
        target_accepted_count: accepted samples to collect before stopping
        max_draws: hard cap on prior draws
        rng: torch.Generator, see base.make_rng
        query: site whose posterior histogram is built, default: "partner_gender"
        batch_size: draws generated per vectorised step
        strict: raise InsufficientSamples instead of warning when max_draws runs out; the warning
                is shown once per call site under the default filters, target_reached is always set

        Output
        --------
        Posterior holding the histogram of accepted samples. Sampling stops at exactly
        target_accepted_count accepted samples or max_draws draws, whichever comes first;
        draws past the stopping point are not counted.
        """
        base.check_count("target_accepted_count", target_accepted_count)
        base.check_count("max_draws", max_draws)
        base.check_count("batch_size", batch_size, minimum=1)
        if query not in QUERY_SUPPORT:
            raise InvalidConfiguration("unknown query site '%s', expected one of %s"%(query, list(QUERY_SUPPORT)))

        posterior = Posterior(query, int(target_accepted_count))
        while posterior.accepted < posterior.target and posterior.draws < max_draws:
            num_samples = min(batch_size, max_draws - posterior.draws)
            batch = base.generate_batch(prior, rng, num_samples)
            accepted_idx = torch.nonzero(base.accept_mask(constraint, batch)).flatten()

            needed = posterior.target - posterior.accepted
            consumed = num_samples
            if len(accepted_idx) >= needed:
                accepted_idx = accepted_idx[:needed]
                consumed = int(accepted_idx[-1]) + 1

            values = batch[query][accepted_idx]
            for value in posterior.counts:
                posterior.counts[value] += int((values == value).sum())
            posterior.draws += consumed

            if print_logs:
                print("draws: %s | accepted: %s/%s"%(posterior.draws, posterior.accepted, posterior.target))

        if not posterior.target_reached:
            message = "collected %s of %s accepted samples after %s draws"%(posterior.accepted, posterior.target, posterior.draws)
            if strict:
                raise InsufficientSamples(message, posterior)
            warnings.warn(InsufficientSamples(message, posterior), stacklevel=2)
        return posterior

    @staticmethod
    def infer_n_chains(prior, constraint, target_accepted_count, max_draws, seed=0, num_chains=4,
                       query="partner_gender", batch_size=DEFAULT_BATCH_SIZE, strict=False, print_logs=0):
        """
        Input
        -------
        target_accepted_count, max_draws: totals split as evenly as possible across chains
        seed: chain 'chain_k' draws from a generator seeded with seed + k
        num_chains: count of independent rejection samplers, default 4
        (remaining arguments as in base.infer)

        Outputs
        ---------
        chain_posteriors: a dictionary with chain names as keys & Posterior of each chain as values
        merged_posterior: Posterior whose histogram is the sum of all chain histograms
        """
        base.check_count("num_chains", num_chains, minimum=1)
        base.check_count("target_accepted_count", target_accepted_count)
        base.check_count("max_draws", max_draws)

        split = lambda total, idx: total//num_chains + (1 if idx < total % num_chains else 0)
        chain_posteriors = {}
        merged_posterior = Posterior(query, 0)

        t1 = time.time()
        for idx in range(num_chains):
            chain = "chain_{}".format(idx)
            chain_posteriors[chain] = base.infer(prior, constraint, split(target_accepted_count, idx),
                                                 split(max_draws, idx), base.make_rng(seed + idx), query=query,
                                                 batch_size=batch_size, strict=strict)
            merged_posterior = merged_posterior.merge(chain_posteriors[chain])
            if print_logs:
                print("%s: %s"%(chain, chain_posteriors[chain]))

        if print_logs:
            print("\nTotal time: ", time.time()-t1)
        return chain_posteriors, merged_posterior

    @staticmethod
    def enumerate_posterior(prior, constraint, query="partner_gender"):
        """
        Exact P(query | constraint) by enumerating the 2x2 input support, used as the
        reference value the rejection sampler converges to.
        """
        if query not in QUERY_SUPPORT:
            raise InvalidConfiguration("unknown query site '%s', expected one of %s"%(query, list(QUERY_SUPPORT)))
        priors = prior.distributions()
        support = {site: priors[site].enumerate_support() for site in PRIOR_SITES}
        partner_gender, stressed = torch.meshgrid(support["partner_gender"], support["stressed"], indexing="ij")
        partner_gender, stressed = partner_gender.flatten(), stressed.flatten()

        joint = (priors["partner_gender"].log_prob(partner_gender) + priors["stressed"].log_prob(stressed)).exp()
        batch = {"partner_gender": partner_gender.bool(), "stressed": stressed.bool()}
        batch["dominance"] = base.lookup_tensor(batch["partner_gender"], batch["stressed"])
        joint = joint * base.accept_mask(constraint, batch).to(joint.dtype)

        evidence = joint.sum().item()
        if evidence <= 0:
            raise InvalidConfiguration("constraint has zero probability under the prior")
        return {value: (joint[batch[query] == value].sum().item())/evidence for value in QUERY_SUPPORT[query]}

    @staticmethod
    def summary_stats_df(posterior, cred=0.95):
        """
        Input
        -------
        posterior: Posterior from base.infer / base.infer_n_chains
        cred: mass of the equal-tailed Jeffreys credible interval, default 0.95

        Output
        --------
        DataFrame indexed by the query values with 'count', 'probability', 'lower', 'upper'.
        """
        total = posterior.accepted
        tail = (1 - cred)/2
        rows = []
        for value, count in posterior.counts.items():
            if total:
                lower, upper = stats.beta.ppf([tail, 1 - tail], count + 0.5, total - count + 0.5)
                probability = count/total
            else:
                lower, upper, probability = np.nan, np.nan, np.nan
            rows.append({posterior.query: value, "count": count, "probability": probability,
                         "lower": float(lower), "upper": float(upper)})
        return pd.DataFrame(rows).set_index(posterior.query)

    @staticmethod
    def chains_summary_df(chain_posteriors):
        summary_stats_df = pd.DataFrame([{"chain": chain, "accepted": posterior.accepted, "draws": posterior.draws,
                                          "acceptance_rate": posterior.acceptance_rate,
                                          "p_true": posterior.probabilities().get(True, np.nan),
                                          "target_reached": posterior.target_reached}
                                         for chain, posterior in chain_posteriors.items()])
        summary_stats_df.set_index("chain", inplace=True)
        return summary_stats_df
