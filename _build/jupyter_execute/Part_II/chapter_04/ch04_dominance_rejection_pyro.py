#!/usr/bin/env python
# coding: utf-8

# ## Chapter 4: Who dominates an interaction? Rejection sampling a toy generative model

# ### Objective:
#
# Daily diary studies record, for every social interaction, who the partner was, how the participant felt and how they behaved.
# Before fitting multilevel regressions to such records it helps to write down a tiny *generative* story and ask it questions.
# Here the story has two binary causes and one outcome:
#
# - `partner_gender` $\sim$ Bernoulli(0.5)
# - `stressed` $\sim$ Bernoulli(0.3)
# - `dominance` is read off a fixed 2x2 table: (1,1) $\to$ 7, (1,0) $\to$ 5, (0,1) $\to$ 6, (0,0) $\to$ 4
#
# Note: the table is an illustrative example. The 0/1 coding of `partner_gender` is not tied to a particular real-world convention.

# In[1]:


import pyro
import pyro.poutine as poutine

from Part_II.chapter_04.chapter04 import base, DEFAULT_PRIOR, InsufficientSamples


# ### The model as a Pyro program
#
# `base.DominanceModel` is the same story written with `pyro.sample` statements. Tracing it shows the sampled inputs and the deterministic dominance score.

# In[2]:


pyro.set_rng_seed(1)
trace = poutine.trace(base.DominanceModel).get_trace(DEFAULT_PRIOR)
print({site: trace.nodes[site]["value"].item() for site in ["partner_gender", "stressed", "dominance"]})


# ### Conditioning by rejection
#
# We observe that the participant behaved dominantly, `dominance >= 5`. What does that tell us about the partner?
# Rejection sampling draws interactions from the prior and throws away every draw that contradicts the observation; the survivors approximate the posterior.
# The random source is an explicit `torch.Generator`, so rerunning the cell with the same seed reproduces the histogram exactly.

# In[3]:


posterior = base.infer(DEFAULT_PRIOR, base.dominance_at_least(5), target_accepted_count=10000,
                       max_draws=100000, rng=base.make_rng(2021))
print(posterior)
base.summary_stats_df(posterior)


# Only the (0, 0) cell gives a dominance below 5, so the exact answer is $P(\text{partner\_gender}=1 \mid \text{dominance} \geq 5) = 0.5/(0.5 + 0.5 \times 0.3) = 10/13 \approx 0.769$.
# Enumerating the four cells confirms it:

# In[4]:


base.enumerate_posterior(DEFAULT_PRIOR, base.dominance_at_least(5))


# ### Independent chains
#
# Draws are independent, so the work splits across chains, each with its own seed offset. The chain histograms add up to the pooled posterior.

# In[5]:


chain_posteriors, merged_posterior = base.infer_n_chains(DEFAULT_PRIOR, base.dominance_at_least(5), target_accepted_count=10000,
                                                         max_draws=100000, seed=2021, num_chains=4, print_logs=1)
base.chains_summary_df(chain_posteriors)


# ### When the budget runs out
#
# An observation the model finds implausible (here impossible, `dominance >= 8`) never yields enough accepted draws. The sampler stops at `max_draws`, returns what it has and flags it with an `InsufficientSamples` warning; deciding whether to extend the budget is left to the analyst.

# In[6]:


partial_posterior = base.infer(DEFAULT_PRIOR, base.dominance_at_least(8), target_accepted_count=100,
                               max_draws=5000, rng=base.make_rng(2021))
print(partial_posterior.target_reached, partial_posterior.draws)


# Python shows a given warning only once per call site, so rerunning the cell above stays quiet after the first time.
# `partial_posterior.target_reached` is the value to check; pass `strict=True` to get an exception on every run instead.

# In[7]:


try:
    base.infer(DEFAULT_PRIOR, base.dominance_at_least(8), target_accepted_count=100,
               max_draws=5000, rng=base.make_rng(2021), strict=True)
except InsufficientSamples as error:
    print("Budget exhausted: %s"%error)
